import os

from pyln.wtclient import crypto, net
from pyln.wtclient.appointment import Appointment, AppointmentReceipt
from pyln.wtclient.tower import MisbehaviorProof

ACCEPT = "accept"
MISBEHAVE = "misbehave"


def get_random_appointment(blob_size=100):
    return Appointment(os.urandom(16), os.urandom(blob_size), 144)


def sign_receipt(user_signature, start_block, sk):
    unsigned = AppointmentReceipt(user_signature, start_block, "")
    return AppointmentReceipt(user_signature, start_block, crypto.sign(unsigned.serialize(), sk))


class FakeTower(object):
    """Stands in for `net.add_appointment`.

    Each call consumes the next scripted outcome; once the script runs out
    `default` is used. An outcome is either ACCEPT, MISBEHAVE or an exception
    instance to raise.
    """
    def __init__(self, outcomes=None, default=ACCEPT, available_slots=100):
        self.sk, pk = crypto.generate_keypair()
        self.tower_id = pk.to_bytes().hex()
        self.outcomes = list(outcomes or [])
        self.default = default
        self.available_slots = available_slots
        self.start_block = 100
        self.calls = []
        self.on_call = None

    def __call__(self, tower_id, net_addr, appointment, signature):
        self.calls.append((tower_id, net_addr, appointment.locator))
        if self.on_call is not None:
            self.on_call(tower_id, net_addr, appointment)

        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome

        if outcome == MISBEHAVE:
            other_sk, other_pk = crypto.generate_keypair()
            receipt = sign_receipt(signature, self.start_block, other_sk)
            raise net.ReceiptSignatureError(
                MisbehaviorProof(appointment.locator, receipt, other_pk.to_bytes().hex())
            )

        self.available_slots -= 1
        return self.available_slots, sign_receipt(signature, self.start_block, self.sk)

    @property
    def sent_locators(self):
        return [locator for _, _, locator in self.calls]


class FakeClock(object):
    """A monotonic clock that only moves when something sleeps on it."""
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay
