import logging
import threading
from typing import Dict, List, Optional

from pyln.proto.primitives import PrivateKey, PublicKey

from . import crypto
from .appointment import Appointment, AppointmentReceipt
from .dbm import DBM
from .tower import MisbehaviorProof, TowerInfo, TowerStatus, TowerSummary

logger = logging.getLogger(__name__)


class TowerNotFoundError(KeyError):
    pass


class WTClient(object):
    """Registry of the towers the user is subscribed to.

    Keeps a `TowerSummary` per tower in memory and mirrors every change to
    the database. Each operation is atomic on its own and holds the registry
    lock only while updating memory and disk; callers must never expect two
    calls to be atomic together.
    """
    def __init__(self, dbm: DBM, user_sk: Optional[PrivateKey] = None) -> None:
        self.dbm = dbm
        self.lock = threading.RLock()

        if user_sk is None:
            secret = dbm.load_user_key()
            if secret is None:
                user_sk, _ = crypto.generate_keypair()
                dbm.store_user_key(user_sk.serializeCompressed())
                logger.info("Generated a new user key")
            else:
                user_sk = PrivateKey(secret)
        self.user_sk: PrivateKey = user_sk
        self.user_id: str = user_sk.public_key().to_bytes().hex()

        self.towers: Dict[str, TowerSummary] = {
            tower_id: info.get_summary() for tower_id, info in dbm.load_towers().items()
        }
        logger.debug("Loaded %d towers from the database", len(self.towers))

    def _get_summary(self, tower_id: str) -> TowerSummary:
        try:
            return self.towers[tower_id]
        except KeyError:
            raise TowerNotFoundError(tower_id)

    def get_signing_key(self) -> PrivateKey:
        return self.user_sk

    def get_public_key(self) -> PublicKey:
        return self.user_sk.public_key()

    def add_update_tower(self, tower_id: str, net_addr: str, available_slots: int,
                         subscription_expiry: int) -> None:
        """Adds a tower or refreshes its subscription data.

        A tower being retried keeps its status: only the retry manager moves
        towers out of `TemporaryUnreachable`.
        """
        with self.lock:
            summary = self.towers.get(tower_id)
            if summary is None:
                summary = TowerSummary(net_addr, available_slots, subscription_expiry)
                self.towers[tower_id] = summary
            else:
                summary.net_addr = net_addr
                summary.available_slots = available_slots
                summary.subscription_expiry = subscription_expiry
                if not summary.status.is_retrying():
                    summary.status = TowerStatus.REACHABLE

            self.dbm.store_tower_record(tower_id, net_addr, available_slots, subscription_expiry, summary.status)

    def remove_tower(self, tower_id: str) -> None:
        with self.lock:
            self._get_summary(tower_id)
            del self.towers[tower_id]
            self.dbm.remove_tower(tower_id)

    def list_towers(self) -> Dict[str, TowerSummary]:
        with self.lock:
            return dict(self.towers)

    def load_tower_info(self, tower_id: str) -> TowerInfo:
        tower = self.dbm.load_tower_record(tower_id)
        if tower is None:
            raise TowerNotFoundError(tower_id)
        return tower

    def get_tower_summary(self, tower_id: str) -> TowerSummary:
        with self.lock:
            return self._get_summary(tower_id)

    def get_tower_status(self, tower_id: str) -> TowerStatus:
        with self.lock:
            return self._get_summary(tower_id).status

    def set_status(self, tower_id: str, status: TowerStatus) -> None:
        with self.lock:
            self._get_summary(tower_id).status = status
            self.dbm.update_tower_status(tower_id, status)

    def get_net_addr(self, tower_id: str) -> str:
        with self.lock:
            return self._get_summary(tower_id).net_addr

    def set_net_addr(self, tower_id: str, net_addr: str) -> None:
        with self.lock:
            self._get_summary(tower_id).net_addr = net_addr
            self.dbm.update_net_addr(tower_id, net_addr)

    def has_misbehaved(self, tower_id: str) -> bool:
        with self.lock:
            return self._get_summary(tower_id).misbehaving

    def load_pending(self, tower_id: str) -> List[Appointment]:
        return self.dbm.load_pending_appointments(tower_id)

    def add_pending_appointment(self, tower_id: str, appointment: Appointment) -> None:
        with self.lock:
            summary = self._get_summary(tower_id)
            if appointment.locator not in summary.pending_appointments:
                summary.pending_appointments.append(appointment.locator)
            self.dbm.store_pending_appointment(tower_id, appointment)

    def store_receipt(self, tower_id: str, locator: bytes, available_slots: int,
                      receipt: AppointmentReceipt) -> None:
        with self.lock:
            self._get_summary(tower_id).available_slots = available_slots
            self.dbm.store_appointment_receipt(tower_id, locator, available_slots, receipt)

    def clear_pending(self, tower_id: str, locator: bytes) -> None:
        with self.lock:
            summary = self._get_summary(tower_id)
            if locator in summary.pending_appointments:
                summary.pending_appointments.remove(locator)
            self.dbm.delete_pending_appointment(tower_id, locator)

    def mark_invalid(self, tower_id: str, appointment: Appointment) -> None:
        with self.lock:
            summary = self._get_summary(tower_id)
            if appointment.locator in summary.pending_appointments:
                summary.pending_appointments.remove(appointment.locator)
            if appointment.locator not in summary.invalid_appointments:
                summary.invalid_appointments.append(appointment.locator)
            self.dbm.store_invalid_appointment(tower_id, appointment)

    def record_misbehavior(self, tower_id: str, proof: MisbehaviorProof) -> None:
        with self.lock:
            summary = self._get_summary(tower_id)
            if proof.locator in summary.pending_appointments:
                summary.pending_appointments.remove(proof.locator)
            summary.misbehaving = True
            self.dbm.store_misbehaving_proof(tower_id, proof)
