import struct
from dataclasses import dataclass
from typing import Any, Dict

from . import crypto

LOCATOR_LEN = 16

# Blocks the tower has to react once a breach is seen. The plugin doesn't
# know the real value for each channel, so it uses lightningd's default.
DEFAULT_TO_SELF_DELAY = 144


def compute_locator(commitment_txid: bytes) -> bytes:
    """The locator is the first half of the commitment transaction id."""
    if len(commitment_txid) != 32:
        raise ValueError("commitment_txid must be 32-byte long. {} received".format(len(commitment_txid)))
    return commitment_txid[:LOCATOR_LEN]


@dataclass(frozen=True)
class Appointment:
    locator: bytes
    encrypted_blob: bytes
    to_self_delay: int = DEFAULT_TO_SELF_DELAY

    def serialize(self) -> bytes:
        """This is the message the user signs when sending the appointment."""
        return self.locator + self.encrypted_blob + struct.pack("!I", self.to_self_delay)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locator": self.locator.hex(),
            "encrypted_blob": self.encrypted_blob.hex(),
            "to_self_delay": self.to_self_delay,
        }


@dataclass(frozen=True)
class AppointmentReceipt:
    """Proof that a tower accepted an appointment.

    `user_signature` is the signature the user sent along the appointment and
    `signature` is the tower's signature over `serialize()`. It is the only
    thing that lets the user hold the tower accountable later on.
    """
    user_signature: str
    start_block: int
    signature: str

    def serialize(self) -> bytes:
        return self.user_signature.encode("ascii") + struct.pack("!I", self.start_block)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_signature": self.user_signature,
            "start_block": self.start_block,
            "signature": self.signature,
        }


def build_appointment(commitment_txid: bytes, penalty_tx: bytes,
                      to_self_delay: int = DEFAULT_TO_SELF_DELAY) -> Appointment:
    return Appointment(
        compute_locator(commitment_txid),
        crypto.encrypt(penalty_tx, commitment_txid),
        to_self_delay,
    )
