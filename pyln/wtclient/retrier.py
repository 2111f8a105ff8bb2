import asyncio
import logging
import threading
import time
from typing import Callable, Optional, Set, Tuple

from . import crypto, net
from .appointment import Appointment, AppointmentReceipt
from .backoff import (Permanent, RetryError, RetryPermanentError, Transient,
                      exponential_backoff, retry_notify)
from .tower import TowerStatus
from .wt_client import TowerNotFoundError, WTClient

logger = logging.getLogger(__name__)

# add_appointment(tower_id, net_addr, appointment, signature) -> (slots, receipt)
Transport = Callable[[str, str, Appointment, str], Tuple[int, AppointmentReceipt]]


async def do_retry(tower_id: str, wt_client: WTClient, transport: Transport = net.add_appointment) -> None:
    """Sends all the pending appointments of a tower, in order.

    Everything is read from `wt_client` on every call and every outcome is
    committed as soon as it is known, so a cycle that aborts halfway can be
    run again and will only resend what is still pending.

    Raises:
        :obj:`Transient`: the tower could not be reached, or rejected the
        request for a reason that may go away (e.g. subscription issues).
        :obj:`Permanent`: the tower returned a receipt with a bad signature.
    """
    appointments = wt_client.load_pending(tower_id)
    net_addr = wt_client.get_net_addr(tower_id)
    user_sk = wt_client.get_signing_key()

    for appointment in appointments:
        locator = appointment.locator.hex()
        signature = crypto.sign(appointment.serialize(), user_sk)
        try:
            slots, receipt = await asyncio.to_thread(transport, tower_id, net_addr, appointment, signature)

        except net.ConnectionFailure as e:
            logger.warning("%s cannot be reached. Tower will be retried later", tower_id)
            raise Transient("Tower cannot be reached: {}".format(e))

        except net.ApiError as e:
            if e.is_subscription_error:
                logger.warning("There is a subscription issue with %s", tower_id)
                raise Transient("Subscription error: {}".format(e))

            logger.warning("%s rejected appointment %s. Error: %s, error_code: %s",
                           tower_id, locator, e.message, e.error_code)
            wt_client.mark_invalid(tower_id, appointment)

        except net.ReceiptSignatureError as e:
            logger.warning("Cannot recover known tower_id from the appointment receipt. "
                           "Flagging %s as misbehaving", tower_id)
            wt_client.record_misbehavior(tower_id, e.proof)
            raise Permanent("Tower misbehaved")

        except net.TransportError as e:
            # Nothing says the appointment is at fault, so keep it pending.
            logger.warning("Unexpected response from %s while sending %s: %s", tower_id, locator, e)
            raise Transient("Transport error: {}".format(e))

        else:
            wt_client.store_receipt(tower_id, appointment.locator, slots, receipt)
            wt_client.clear_pending(tower_id, appointment.locator)
            logger.debug("Response verified and data stored in the database")


class RetryManager(object):
    """Retries towers that have been flagged as unreachable.

    Signals are consumed one at a time: a tower is retried until it succeeds,
    misbehaves or the backoff gives up, and only then is the next signal
    taken. A slow tower therefore delays retries for every tower signaled
    after it; this keeps at most one retry cycle in flight.

    A tower is queued at most once: signals for a tower that is already
    queued or being retried are dropped.
    """
    def __init__(self, wt_client: WTClient, transport: Transport = net.add_appointment,
                 max_elapsed_time: float = 900, max_interval: float = 60,
                 sleep=asyncio.sleep, clock=time.monotonic) -> None:
        self.wt_client = wt_client
        self.transport = transport
        self.max_elapsed_time = max_elapsed_time
        self.max_interval = max_interval
        self.sleep = sleep
        self.clock = clock

        self.unreachable_towers: asyncio.Queue = asyncio.Queue()
        self.signaled: Set[str] = set()
        self.lock = threading.Lock()
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.thread: Optional[threading.Thread] = None

    def signal(self, tower_id: Optional[str]) -> None:
        """Queues a tower to be retried. Safe to call from any thread.

        A None stops the manager once the signals queued before it are done.
        """
        if tower_id is not None:
            with self.lock:
                if tower_id in self.signaled:
                    logger.debug("%s is already queued for retry", tower_id)
                    return
                self.signaled.add(tower_id)

        if self.loop is not None and self.thread is not threading.current_thread():
            self.loop.call_soon_threadsafe(self.unreachable_towers.put_nowait, tower_id)
        else:
            self.unreachable_towers.put_nowait(tower_id)

    def _release(self, tower_id: str) -> None:
        with self.lock:
            self.signaled.discard(tower_id)

    def _finish(self, tower_id: str, status: TowerStatus) -> None:
        # Released before the final status is written, so a failure seen
        # right after the tower turns reachable queues a new cycle.
        self._release(tower_id)
        try:
            self.wt_client.set_status(tower_id, status)
        except TowerNotFoundError:
            logger.warning("%s was removed while being retried", tower_id)

    async def retry_tower(self, tower_id: str) -> Optional[TowerStatus]:
        """Drives a full retry cycle for `tower_id`.

        Returns:
            :obj:`TowerStatus`: the status the tower ends up in, or None if the
            tower is not known.
        """
        try:
            if self.wt_client.has_misbehaved(tower_id):
                logger.warning("%s has misbehaved, it won't be retried", tower_id)
                self._finish(tower_id, TowerStatus.UNREACHABLE)
                return TowerStatus.UNREACHABLE

            self.wt_client.set_status(tower_id, TowerStatus.TEMPORARY_UNREACHABLE)
        except TowerNotFoundError:
            logger.warning("Cannot retry %s, the tower is not registered", tower_id)
            self._release(tower_id)
            return None

        def notify(cause, delay):
            logger.warning("Retry error happened with %s. %s. Retrying in %.1fs", tower_id, cause, delay)

        logger.info("Retrying tower %s", tower_id)
        try:
            await retry_notify(
                lambda: do_retry(tower_id, self.wt_client, self.transport),
                max_elapsed_time=self.max_elapsed_time,
                wait=exponential_backoff(max_interval=self.max_interval),
                notify=notify,
                sleep=self.sleep,
                clock=self.clock,
            )
        except RetryPermanentError as e:
            logger.warning("Retry strategy aborted for %s. %s", tower_id, e)
            status = TowerStatus.UNREACHABLE
        except RetryError as e:
            logger.warning("Retry strategy gave up for %s. %s", tower_id, e)
            status = TowerStatus.UNREACHABLE
        except Exception:
            logger.exception("Unexpected error while retrying %s", tower_id)
            status = TowerStatus.UNREACHABLE
        else:
            logger.info("Retry strategy succeeded for %s", tower_id)
            status = TowerStatus.REACHABLE

        if status is TowerStatus.UNREACHABLE:
            logger.warning("Setting %s as unreachable", tower_id)

        self._finish(tower_id, status)
        return status

    async def run(self) -> None:
        """Consumes signals until a None is queued.

        Errors are logged and never stop the loop.
        """
        logger.info("Starting retry manager")
        while True:
            tower_id = await self.unreachable_towers.get()
            try:
                if tower_id is None:
                    logger.info("Stopping retry manager")
                    return
                await self.retry_tower(tower_id)
            except Exception:
                logger.exception("Retry manager failed to process %s", tower_id)
                self._release(tower_id)
            finally:
                self.unreachable_towers.task_done()

    def _run_forever(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_until_complete(self.run())
        self.loop.close()

    def start(self) -> None:
        """Runs the manager in a daemon thread with its own event loop."""
        if self.thread is not None:
            raise RuntimeError("Retry manager already started")
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run_forever, name="retry-manager", daemon=True)
        self.thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.signal(None)
        if self.thread is not None:
            self.thread.join(timeout)
