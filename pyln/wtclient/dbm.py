import logging
import os
import sqlite3
import threading
from typing import Dict, List, Optional

from .appointment import Appointment, AppointmentReceipt
from .tower import MisbehaviorProof, TowerInfo, TowerStatus

logger = logging.getLogger(__name__)

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS towers (
        tower_id TEXT PRIMARY KEY,
        net_addr TEXT NOT NULL,
        available_slots INTEGER NOT NULL,
        subscription_expiry INTEGER NOT NULL,
        status TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS appointments (
        locator BLOB PRIMARY KEY,
        encrypted_blob BLOB NOT NULL,
        to_self_delay INTEGER NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS appointment_receipts (
        tower_id TEXT NOT NULL,
        locator BLOB NOT NULL,
        start_block INTEGER NOT NULL,
        user_signature TEXT NOT NULL,
        tower_signature TEXT NOT NULL,
        PRIMARY KEY (tower_id, locator)
    )""",
    # `id` keeps insertion order, which is the order pending appointments are
    # retried in.
    """CREATE TABLE IF NOT EXISTS pending_appointments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tower_id TEXT NOT NULL,
        locator BLOB NOT NULL,
        UNIQUE (tower_id, locator)
    )""",
    """CREATE TABLE IF NOT EXISTS invalid_appointments (
        tower_id TEXT NOT NULL,
        locator BLOB NOT NULL,
        PRIMARY KEY (tower_id, locator)
    )""",
    """CREATE TABLE IF NOT EXISTS misbehaving_proofs (
        tower_id TEXT PRIMARY KEY,
        locator BLOB NOT NULL,
        start_block INTEGER NOT NULL,
        user_signature TEXT NOT NULL,
        tower_signature TEXT NOT NULL,
        recovered_id TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS keys (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        secret BLOB NOT NULL
    )""",
]


class DBM(object):
    """Persistent storage for the watchtower client.

    Every public method is a single transaction. The lock is held only for
    the duration of the query, so callers can interleave freely; nothing in
    here ever touches the network.
    """
    def __init__(self, db_path: str, logger: logging.Logger = logger) -> None:
        self.db_path = db_path
        self.logger = logger
        self.lock = threading.Lock()

        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        with self.lock, self.conn:
            for stmt in SCHEMA:
                self.conn.execute(stmt)
        self.logger.debug("Watchtower database ready at %s", db_path)

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def store_user_key(self, secret: bytes) -> None:
        with self.lock, self.conn:
            self.conn.execute("INSERT INTO keys (secret) VALUES (?)", (secret,))

    def load_user_key(self) -> Optional[bytes]:
        """Returns the last stored user secret, if any."""
        with self.lock:
            row = self.conn.execute("SELECT secret FROM keys ORDER BY id DESC LIMIT 1").fetchone()
        return row["secret"] if row else None

    def store_tower_record(self, tower_id: str, net_addr: str, available_slots: int,
                           subscription_expiry: int, status: TowerStatus) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """INSERT INTO towers (tower_id, net_addr, available_slots, subscription_expiry, status)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (tower_id) DO UPDATE SET
                       net_addr = excluded.net_addr,
                       available_slots = excluded.available_slots,
                       subscription_expiry = excluded.subscription_expiry,
                       status = excluded.status""",
                (tower_id, net_addr, available_slots, subscription_expiry, status.value),
            )

    def update_tower_status(self, tower_id: str, status: TowerStatus) -> None:
        with self.lock, self.conn:
            self.conn.execute("UPDATE towers SET status = ? WHERE tower_id = ?", (status.value, tower_id))

    def update_net_addr(self, tower_id: str, net_addr: str) -> None:
        with self.lock, self.conn:
            self.conn.execute("UPDATE towers SET net_addr = ? WHERE tower_id = ?", (net_addr, tower_id))

    def load_tower_ids(self) -> List[str]:
        with self.lock:
            rows = self.conn.execute("SELECT tower_id FROM towers").fetchall()
        return [r["tower_id"] for r in rows]

    def load_tower_record(self, tower_id: str) -> Optional[TowerInfo]:
        """Loads a tower with all its appointments, receipts and proofs."""
        with self.lock:
            row = self.conn.execute("SELECT * FROM towers WHERE tower_id = ?", (tower_id,)).fetchone()
        if row is None:
            return None

        return TowerInfo(
            net_addr=row["net_addr"],
            available_slots=row["available_slots"],
            subscription_expiry=row["subscription_expiry"],
            status=TowerStatus(row["status"]),
            appointments=self.load_appointment_receipts(tower_id),
            pending_appointments=self.load_pending_appointments(tower_id),
            invalid_appointments=self.load_invalid_appointments(tower_id),
            misbehaving_proof=self.load_misbehaving_proof(tower_id),
        )

    def load_towers(self) -> Dict[str, TowerInfo]:
        towers = {}
        for tower_id in self.load_tower_ids():
            tower = self.load_tower_record(tower_id)
            if tower is not None:
                towers[tower_id] = tower
        return towers

    def remove_tower(self, tower_id: str) -> None:
        with self.lock, self.conn:
            for table in ["towers", "appointment_receipts", "pending_appointments",
                          "invalid_appointments", "misbehaving_proofs"]:
                self.conn.execute("DELETE FROM {} WHERE tower_id = ?".format(table), (tower_id,))
            self._delete_orphan_appointments()

    def store_appointment_receipt(self, tower_id: str, locator: bytes, available_slots: int,
                                  receipt: AppointmentReceipt) -> None:
        """Stores the receipt and the slot count the tower reported with it."""
        with self.lock, self.conn:
            self.conn.execute(
                """INSERT OR REPLACE INTO appointment_receipts
                   (tower_id, locator, start_block, user_signature, tower_signature)
                   VALUES (?, ?, ?, ?, ?)""",
                (tower_id, locator, receipt.start_block, receipt.user_signature, receipt.signature),
            )
            self.conn.execute(
                "UPDATE towers SET available_slots = ? WHERE tower_id = ?", (available_slots, tower_id)
            )

    def load_appointment_receipts(self, tower_id: str) -> Dict[bytes, AppointmentReceipt]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT * FROM appointment_receipts WHERE tower_id = ?", (tower_id,)
            ).fetchall()
        return {
            r["locator"]: AppointmentReceipt(r["user_signature"], r["start_block"], r["tower_signature"])
            for r in rows
        }

    def store_pending_appointment(self, tower_id: str, appointment: Appointment) -> None:
        with self.lock, self.conn:
            self._store_appointment(appointment)
            self.conn.execute(
                "INSERT OR IGNORE INTO pending_appointments (tower_id, locator) VALUES (?, ?)",
                (tower_id, appointment.locator),
            )

    def delete_pending_appointment(self, tower_id: str, locator: bytes) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "DELETE FROM pending_appointments WHERE tower_id = ? AND locator = ?", (tower_id, locator)
            )
            self._delete_orphan_appointments()

    def load_pending_appointments(self, tower_id: str) -> List[Appointment]:
        with self.lock:
            rows = self.conn.execute(
                """SELECT a.locator, a.encrypted_blob, a.to_self_delay
                   FROM pending_appointments p JOIN appointments a ON p.locator = a.locator
                   WHERE p.tower_id = ? ORDER BY p.id""",
                (tower_id,),
            ).fetchall()
        return [Appointment(r["locator"], r["encrypted_blob"], r["to_self_delay"]) for r in rows]

    def store_invalid_appointment(self, tower_id: str, appointment: Appointment) -> None:
        """Flags the appointment as invalid and drops it from the pending set."""
        with self.lock, self.conn:
            self._store_appointment(appointment)
            self.conn.execute(
                "INSERT OR IGNORE INTO invalid_appointments (tower_id, locator) VALUES (?, ?)",
                (tower_id, appointment.locator),
            )
            self.conn.execute(
                "DELETE FROM pending_appointments WHERE tower_id = ? AND locator = ?",
                (tower_id, appointment.locator),
            )

    def load_invalid_appointments(self, tower_id: str) -> List[Appointment]:
        with self.lock:
            rows = self.conn.execute(
                """SELECT a.locator, a.encrypted_blob, a.to_self_delay
                   FROM invalid_appointments i JOIN appointments a ON i.locator = a.locator
                   WHERE i.tower_id = ?""",
                (tower_id,),
            ).fetchall()
        return [Appointment(r["locator"], r["encrypted_blob"], r["to_self_delay"]) for r in rows]

    def store_misbehaving_proof(self, tower_id: str, proof: MisbehaviorProof) -> None:
        """Stores the proof and drops the offending appointment from the
        pending set."""
        receipt = proof.appointment_receipt
        with self.lock, self.conn:
            self.conn.execute(
                """INSERT OR REPLACE INTO misbehaving_proofs
                   (tower_id, locator, start_block, user_signature, tower_signature, recovered_id)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (tower_id, proof.locator, receipt.start_block, receipt.user_signature,
                 receipt.signature, proof.recovered_id),
            )
            self.conn.execute(
                "DELETE FROM pending_appointments WHERE tower_id = ? AND locator = ?",
                (tower_id, proof.locator),
            )
            self._delete_orphan_appointments()

    def load_misbehaving_proof(self, tower_id: str) -> Optional[MisbehaviorProof]:
        with self.lock:
            r = self.conn.execute(
                "SELECT * FROM misbehaving_proofs WHERE tower_id = ?", (tower_id,)
            ).fetchone()
        if r is None:
            return None
        return MisbehaviorProof(
            r["locator"],
            AppointmentReceipt(r["user_signature"], r["start_block"], r["tower_signature"]),
            r["recovered_id"],
        )

    def _store_appointment(self, appointment: Appointment) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO appointments (locator, encrypted_blob, to_self_delay) VALUES (?, ?, ?)",
            (appointment.locator, appointment.encrypted_blob, appointment.to_self_delay),
        )

    def _delete_orphan_appointments(self) -> None:
        # Appointment data is shared by all towers, only drop it once no
        # tower references it anymore.
        self.conn.execute(
            """DELETE FROM appointments WHERE
                   locator NOT IN (SELECT locator FROM pending_appointments) AND
                   locator NOT IN (SELECT locator FROM invalid_appointments)"""
        )
