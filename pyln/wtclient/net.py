"""HTTP transport to talk to towers.

Every call is blocking. The retry manager runs them in a worker thread so
its event loop is never stuck on a slow tower.
"""
import logging
from typing import Any, Dict, Tuple

import requests

from . import crypto, errors
from .appointment import Appointment, AppointmentReceipt
from .tower import MisbehaviorProof

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30


class DeliveryError(Exception):
    pass


class ConnectionFailure(DeliveryError):
    """The tower could not be reached at all."""
    pass


class TransportError(DeliveryError):
    """The request went through but the answer was not usable: read
    timeouts, non-JSON bodies, unexpected status codes and the like."""
    pass


class ApiError(DeliveryError):
    def __init__(self, error_code: int, message: str) -> None:
        self.error_code = error_code
        self.message = message
        super().__init__("{} (error_code={})".format(message, error_code))

    @property
    def is_subscription_error(self) -> bool:
        return self.error_code == errors.APPOINTMENT_INVALID_SIGNATURE_OR_SUBSCRIPTION_ERROR


class ReceiptSignatureError(DeliveryError):
    def __init__(self, proof: MisbehaviorProof) -> None:
        self.proof = proof
        super().__init__("Receipt signature recovers to {}".format(proof.recovered_id))


def post_request(data: Dict[str, Any], endpoint: str, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> requests.Response:
    try:
        return requests.post(url=endpoint, json=data, timeout=timeout)
    except requests.exceptions.ConnectionError as e:
        # Includes connect timeouts.
        raise ConnectionFailure("Cannot connect to {}: {}".format(endpoint, e))
    except requests.exceptions.RequestException as e:
        raise TransportError("Request to {} failed: {}".format(endpoint, e))


def process_post_response(response: requests.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        raise TransportError("Tower returned a non-JSON response (status={})".format(response.status_code))

    if not isinstance(data, dict):
        raise TransportError("Tower returned a malformed response: {}".format(data))

    if response.status_code == 200:
        return data

    if "error_code" in data:
        try:
            error_code = int(data["error_code"])
        except (TypeError, ValueError):
            raise TransportError("Tower returned a malformed error code: {}".format(data["error_code"]))
        raise ApiError(error_code, str(data.get("error", "")))

    raise TransportError("Tower returned status {}: {}".format(response.status_code, data))


def register(tower_id: str, user_id: str, net_addr: str,
             timeout: float = DEFAULT_REQUEST_TIMEOUT) -> Tuple[int, int]:
    """Registers the user with the tower.

    Returns:
        :obj:`tuple`: the available slots and the subscription expiry height.
    """
    logger.debug("Registering in tower %s at %s", tower_id, net_addr)
    response = process_post_response(
        post_request({"user_id": user_id}, "{}/register".format(net_addr), timeout)
    )

    try:
        return int(response["available_slots"]), int(response["subscription_expiry"])
    except (KeyError, TypeError, ValueError):
        raise TransportError("Wrong registration response from {}: {}".format(tower_id, response))


def add_appointment(tower_id: str, net_addr: str, appointment: Appointment, signature: str,
                    timeout: float = DEFAULT_REQUEST_TIMEOUT) -> Tuple[int, AppointmentReceipt]:
    """Sends an appointment to a tower and checks the receipt it returns.

    Returns:
        :obj:`tuple`: the available slots and the appointment receipt.

    Raises:
        :obj:`DeliveryError`: one of its subclasses depending on the cause.
    """
    data = {"appointment": appointment.to_dict(), "signature": signature}
    response = process_post_response(
        post_request(data, "{}/add_appointment".format(net_addr), timeout)
    )

    try:
        locator = response["locator"]
        receipt = AppointmentReceipt(signature, int(response["start_block"]), str(response["signature"]))
        available_slots = int(response["available_slots"])
    except (KeyError, TypeError, ValueError):
        raise TransportError("Wrong add_appointment response from {}: {}".format(tower_id, response))

    if locator != appointment.locator.hex():
        raise TransportError("Tower {} answered for the wrong locator: {}".format(tower_id, locator))

    try:
        recovered_id = crypto.recover_pk(receipt.serialize(), receipt.signature).to_bytes().hex()
    except crypto.SignatureError:
        recovered_id = None

    if recovered_id != tower_id:
        raise ReceiptSignatureError(MisbehaviorProof(appointment.locator, receipt, recovered_id))

    logger.debug("Appointment %s accepted by %s", locator, tower_id)
    return available_slots, receipt
