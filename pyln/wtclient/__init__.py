from .appointment import Appointment, AppointmentReceipt
from .backoff import Permanent, Transient, exponential_backoff, retry_notify
from .retrier import RetryManager, do_retry
from .tower import MisbehaviorProof, TowerStatus
from .wt_client import WTClient

__version__ = "0.1.0"

__all__ = [
    "Appointment",
    "AppointmentReceipt",
    "MisbehaviorProof",
    "Permanent",
    "RetryManager",
    "TowerStatus",
    "Transient",
    "WTClient",
    "do_retry",
    "exponential_backoff",
    "retry_notify",
    "__version__",
]
