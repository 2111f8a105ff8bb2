import functools
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pyln.client import Plugin, RpcException

from . import crypto, net
from .appointment import Appointment, build_appointment
from .dbm import DBM
from .retrier import RetryManager, Transport
from .tower import TowerStatus, parse_tower_address
from .wt_client import TowerNotFoundError, WTClient

logger = logging.getLogger(__name__)

plugin = Plugin(autopatch=False)

plugin.add_option(name="watchtower-port", default=9814, description="Default port towers listen on", opt_type="int", deprecated=False)
plugin.add_option(name="watchtower-max-retry-time", default=900, description="For how long (seconds) an unreachable tower is retried before giving up", opt_type="int", deprecated=False)
plugin.add_option(name="watchtower-max-retry-interval", default=60, description="Maximum time (seconds) between two retries of the same tower", opt_type="int", deprecated=False)
plugin.add_option(name="watchtower-request-timeout", default=30, description="Timeout (seconds) for requests sent to towers", opt_type="int", deprecated=False)


@dataclass
class Config:
    port: int = 9814
    max_retry_time: int = 900
    max_retry_interval: int = 60
    request_timeout: int = 30


def set_config(options: Dict[str, Any]) -> Tuple[Optional[Config], Optional[str]]:
    try:
        config = Config(
            port=int(options.get("watchtower-port", 9814)),
            max_retry_time=int(options.get("watchtower-max-retry-time", 900)),
            max_retry_interval=int(options.get("watchtower-max-retry-interval", 60)),
            request_timeout=int(options.get("watchtower-request-timeout", 30)),
        )
    except (TypeError, ValueError) as err:
        return None, f"Error in parsing options: {err}"

    if not 0 < config.port <= 65535:
        return None, f"`watchtower-port` should be a valid port. Current Value: {config.port}."
    if config.max_retry_time <= 0:
        return None, f"`watchtower-max-retry-time` should be positive. Current Value: {config.max_retry_time}."
    if config.max_retry_interval <= 0 or config.max_retry_interval > config.max_retry_time:
        return None, ("`watchtower-max-retry-interval` should be positive and not bigger than "
                      f"`watchtower-max-retry-time`. Current Value: {config.max_retry_interval}.")
    if config.request_timeout <= 0:
        return None, f"`watchtower-request-timeout` should be positive. Current Value: {config.request_timeout}."
    return config, None


def send_to_towers(wt_client: WTClient, retrier: RetryManager, transport: Transport,
                   appointment: Appointment) -> None:
    """Hands a fresh appointment to every tower we are subscribed to.

    Towers that cannot take it right now get it queued as pending. The
    first time a reachable tower fails to answer it is signaled to the
    retry manager.
    """
    signature = crypto.sign(appointment.serialize(), wt_client.get_signing_key())
    locator = appointment.locator.hex()

    for tower_id, summary in wt_client.list_towers().items():
        if summary.misbehaving:
            logger.debug("%s is misbehaving, not sending appointment %s", tower_id, locator)
            continue

        if summary.status is not TowerStatus.REACHABLE:
            logger.debug("%s is %s. Adding %s to pending", tower_id, summary.status.value, locator)
            wt_client.add_pending_appointment(tower_id, appointment)
            continue

        try:
            slots, receipt = transport(tower_id, summary.net_addr, appointment, signature)

        except (net.ConnectionFailure, net.TransportError) as e:
            logger.warning("%s cannot be reached (%s). Adding %s to pending", tower_id, e, locator)
            wt_client.add_pending_appointment(tower_id, appointment)
            retrier.signal(tower_id)

        except net.ApiError as e:
            if e.is_subscription_error:
                logger.warning("There is a subscription issue with %s. Adding %s to pending", tower_id, locator)
                wt_client.add_pending_appointment(tower_id, appointment)
                retrier.signal(tower_id)
            else:
                logger.warning("%s rejected appointment %s. Error: %s, error_code: %s",
                               tower_id, locator, e.message, e.error_code)
                wt_client.mark_invalid(tower_id, appointment)

        except net.ReceiptSignatureError as e:
            logger.warning("Cannot recover known tower_id from the appointment receipt. "
                           "Flagging %s as misbehaving", tower_id)
            wt_client.record_misbehavior(tower_id, e.proof)
            # The retry manager refuses to retry it and marks it unreachable.
            retrier.signal(tower_id)

        else:
            wt_client.store_receipt(tower_id, appointment.locator, slots, receipt)
            logger.debug("Appointment %s accepted by %s (available slots: %d)", locator, tower_id, slots)


@plugin.method("registertower")
def register_tower(plugin, tower_id, host=None, port=None):
    """Registers the user with the tower at tower_id[@host[:port]]."""
    try:
        tower_id, net_addr = parse_tower_address(tower_id, host, port, plugin.wt_config.port)
    except ValueError as e:
        raise RpcException(str(e))

    try:
        available_slots, subscription_expiry = net.register(
            tower_id, plugin.wt_client.user_id, net_addr, plugin.wt_config.request_timeout
        )
    except net.DeliveryError as e:
        raise RpcException(f"Registration with {tower_id} failed: {e}")

    plugin.wt_client.add_update_tower(tower_id, net_addr, available_slots, subscription_expiry)
    plugin.log(f"Registered with {tower_id}. Available slots: {available_slots}", "info")

    # Appointments left pending by a previous subscription go out before
    # anything new is queued behind them.
    if plugin.wt_client.load_pending(tower_id):
        plugin.retrier.signal(tower_id)

    return {
        "tower_id": tower_id,
        "net_addr": net_addr,
        "available_slots": available_slots,
        "subscription_expiry": subscription_expiry,
    }


@plugin.method("listtowers")
def list_towers(plugin):
    """Lists all registered towers."""
    return {tower_id: summary.to_dict() for tower_id, summary in plugin.wt_client.list_towers().items()}


@plugin.method("gettowerinfo")
def get_tower_info(plugin, tower_id):
    """Shows everything the client knows about a tower."""
    try:
        tower = plugin.wt_client.load_tower_info(tower_id)
    except TowerNotFoundError:
        raise RpcException(f"Unknown tower: {tower_id}")
    return dict(tower_id=tower_id, **tower.to_dict())


@plugin.method("retrytower")
def retry_tower(plugin, tower_id):
    """Retries sending the pending appointments of a tower."""
    try:
        summary = plugin.wt_client.get_tower_summary(tower_id)
    except TowerNotFoundError:
        raise RpcException(f"Unknown tower: {tower_id}")

    if summary.misbehaving:
        raise RpcException(f"{tower_id} has misbehaved and won't be retried")
    if summary.status.is_retrying():
        raise RpcException(f"{tower_id} is already being retried")
    if not summary.pending_appointments:
        raise RpcException(f"{tower_id} has no pending appointments")

    plugin.retrier.signal(tower_id)
    return f"Retrying {tower_id}"


@plugin.method("abandontower")
def abandon_tower(plugin, tower_id):
    """Forgets about a tower, deleting all its data."""
    try:
        status = plugin.wt_client.get_tower_status(tower_id)
    except TowerNotFoundError:
        raise RpcException(f"Unknown tower: {tower_id}")

    if status.is_retrying():
        raise RpcException(f"{tower_id} is being retried. Try again once the retry is over")

    try:
        plugin.wt_client.remove_tower(tower_id)
    except TowerNotFoundError:
        raise RpcException(f"Unknown tower: {tower_id}")
    return f"{tower_id} successfully abandoned"


@plugin.hook("commitment_revocation")
def on_commitment_revocation(commitment_txid, penalty_tx, plugin, **kwargs):
    appointment = build_appointment(bytes.fromhex(commitment_txid), bytes.fromhex(penalty_tx))
    send_to_towers(plugin.wt_client, plugin.retrier, plugin.transport, appointment)
    return {"result": "continue"}


def setup(plugin, config: Config, db_path: str) -> None:
    """Wires the client, the transport and the retry manager into `plugin`."""
    plugin.wt_config = config
    plugin.wt_client = WTClient(DBM(db_path))
    plugin.transport = functools.partial(net.add_appointment, timeout=config.request_timeout)
    plugin.retrier = RetryManager(
        plugin.wt_client,
        plugin.transport,
        max_elapsed_time=config.max_retry_time,
        max_interval=config.max_retry_interval,
    )


@plugin.init()
def init(options, configuration, plugin):
    config, err = set_config(options)
    if err:
        return {'disable': err}

    # Let everything through, lightningd filters by its own log-level.
    logging.getLogger("pyln.wtclient").setLevel(logging.DEBUG)

    setup(plugin, config, os.path.join(plugin.lightning_dir, "watchtower", "watchtower.db"))
    plugin.log(f"Watchtower client initialized. User id: {plugin.wt_client.user_id}", "info")

    # Towers left temporarily unreachable by a previous run have no cycle
    # driving them anymore.
    for tower_id, summary in plugin.wt_client.list_towers().items():
        if summary.status.is_retrying():
            plugin.retrier.signal(tower_id)

    plugin.retrier.start()
