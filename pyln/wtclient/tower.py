from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .appointment import Appointment, AppointmentReceipt

DEFAULT_PORT = 9814


class TowerStatus(Enum):
    REACHABLE = 'reachable'
    TEMPORARY_UNREACHABLE = 'temporarily unreachable'
    UNREACHABLE = 'unreachable'

    def is_retrying(self) -> bool:
        return self is TowerStatus.TEMPORARY_UNREACHABLE


def is_valid_tower_id(tower_id: Any) -> bool:
    """Tower ids are hex-encoded compressed public keys."""
    if not isinstance(tower_id, str) or len(tower_id) != 66:
        return False
    try:
        raw = bytes.fromhex(tower_id)
    except ValueError:
        return False
    return raw[0] in [2, 3]


def parse_tower_address(tower_id: str, host: Optional[str] = None, port: Optional[int] = None,
                        default_port: int = DEFAULT_PORT) -> Tuple[str, str]:
    """Splits `tower_id[@host[:port]]` into the id and the network address.

    The address may also be given through `host` and `port`, but not both
    ways at once.
    """
    if '@' in tower_id:
        if host is not None or port is not None:
            raise ValueError("Cannot specify host or port twice")
        tower_id, host = tower_id.split('@', 1)
        # IPv6 hosts need brackets for this to work: [::1]:9814
        head, sep, tail = host.rpartition(':')
        if sep and tail.isdigit():
            host, port = head, int(tail)

    if not is_valid_tower_id(tower_id):
        raise ValueError("Invalid tower id: {}".format(tower_id))
    if host is None:
        raise ValueError("Tower host is missing")
    if port is None:
        port = default_port
    if not 0 < int(port) <= 65535:
        raise ValueError("Invalid port: {}".format(port))

    if not host.startswith("http://") and not host.startswith("https://"):
        host = "http://{}".format(host)

    return tower_id, "{}:{}".format(host, int(port))


@dataclass
class MisbehaviorProof:
    """A receipt whose signature does not recover to the tower's id."""
    locator: bytes
    appointment_receipt: AppointmentReceipt
    recovered_id: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locator": self.locator.hex(),
            "appointment_receipt": self.appointment_receipt.to_dict(),
            "recovered_id": self.recovered_id,
        }


@dataclass
class TowerSummary:
    """What the plugin keeps in memory about a tower. The rest lives in the
    database and is loaded on demand."""
    net_addr: str
    available_slots: int
    subscription_expiry: int = 0
    status: TowerStatus = TowerStatus.REACHABLE
    pending_appointments: List[bytes] = field(default_factory=list)
    invalid_appointments: List[bytes] = field(default_factory=list)
    misbehaving: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "net_addr": self.net_addr,
            "available_slots": self.available_slots,
            "subscription_expiry": self.subscription_expiry,
            "status": self.status.value,
            "pending_appointments": [locator.hex() for locator in self.pending_appointments],
            "invalid_appointments": [locator.hex() for locator in self.invalid_appointments],
            "misbehaving": self.misbehaving,
        }


@dataclass
class TowerInfo:
    """Everything the plugin knows about a tower.

    Attributes:
        appointments: accepted appointments, locator -> receipt.
        pending_appointments: appointments not yet acknowledged by the tower.
            They stay here while the tower is unreachable or while there is
            a subscription problem.
        invalid_appointments: appointments the tower rejected for cause.
        misbehaving_proof: set if the tower was caught returning a bad
            receipt. The tower is abandoned if so.
    """
    net_addr: str
    available_slots: int
    subscription_expiry: int
    status: TowerStatus
    appointments: Dict[bytes, AppointmentReceipt] = field(default_factory=dict)
    pending_appointments: List[Appointment] = field(default_factory=list)
    invalid_appointments: List[Appointment] = field(default_factory=list)
    misbehaving_proof: Optional[MisbehaviorProof] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "net_addr": self.net_addr,
            "available_slots": self.available_slots,
            "subscription_expiry": self.subscription_expiry,
            "status": self.status.value,
            "appointments": {locator.hex(): receipt.to_dict() for locator, receipt in self.appointments.items()},
            "pending_appointments": [a.to_dict() for a in self.pending_appointments],
            "invalid_appointments": [a.to_dict() for a in self.invalid_appointments],
            "misbehaving_proof": self.misbehaving_proof.to_dict() if self.misbehaving_proof else None,
        }

    def get_summary(self) -> TowerSummary:
        return TowerSummary(
            self.net_addr,
            self.available_slots,
            self.subscription_expiry,
            self.status,
            [a.locator for a in self.pending_appointments],
            [a.locator for a in self.invalid_appointments],
            self.misbehaving_proof is not None,
        )
