# Directory: controllers
# Filename: verification_dispatcher.py

import logging
from typing import Any, Dict, NamedTuple, Optional

import requests

from controllers.operator_context import OperatorContext
from utils.checkin_errors import DispatchError
from utils.code_classifier import ClassifiedCode, CodeKind

module_logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://giraffespacev2.onrender.com/api/v1"
DEFAULT_TIMEOUT_SEC = 20
DETAILS_PATH = "/event/free-check-in/details"
ATTENDANCE_PATH = "/event/free-check-in"
OPERATOR_ACCESS_PATH = "/event/check-in-staff/validate-code"

SERVICE_CODE_TYPES: Dict[CodeKind, str] = {
    CodeKind.SIX_DIGIT: "SIX_DIGIT_CODE",
    CodeKind.SEVEN_DIGIT: "SEVEN_DIGIT_CODE",
    CodeKind.OPTICAL_PAYLOAD: "QR_CODE",
    CodeKind.BARCODE_PAYLOAD: "BARCODE",
}

NOT_REGISTERED_SERVER_MESSAGE = "Free registration not found."
NOT_REGISTERED_DISPLAY_MESSAGE = "User not registered."
GENERIC_FAILURE_MESSAGE = "Failed to check invitation. Please try again."
DEFAULT_SUCCESS_MESSAGE = "Invitation details fetched successfully!"
DEFAULT_REJECTION_MESSAGE = "Failed to fetch invitation details."


class VerificationOutcome(NamedTuple):
    success: bool
    message: str
    payload: Optional[Dict[str, Any]] = None
    alert_type: str = "error"


def display_message(message: str) -> str:
    """The one message rewrite shown to operators."""
    if message.strip() == NOT_REGISTERED_SERVER_MESSAGE:
        return NOT_REGISTERED_DISPLAY_MESSAGE
    return message


class VerificationDispatcher:
    """
    Sends classified codes to the external verification service.

    Args:
        base_url: Root of the check-in API.
        session: A requests.Session to reuse (one is created if omitted).
        timeout_sec: Per-request timeout.
    """

    def __init__(self,
                 base_url: str = DEFAULT_BASE_URL,
                 session: Optional[requests.Session] = None,
                 timeout_sec: float = DEFAULT_TIMEOUT_SEC,
                 details_path: str = DETAILS_PATH,
                 attendance_path: str = ATTENDANCE_PATH,
                 operator_access_path: str = OPERATOR_ACCESS_PATH,
                 logger_instance: Optional[logging.Logger] = None):
        self.logger = logger_instance if logger_instance else module_logger
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout_sec = timeout_sec
        self.details_path = details_path
        self.attendance_path = attendance_path
        self.operator_access_path = operator_access_path

    @staticmethod
    def build_request(code: ClassifiedCode, credential: str) -> Dict[str, str]:
        return {
            "ticketCode": code.normalized_code,
            "codeType": SERVICE_CODE_TYPES[code.kind],
            "sixDigitCode": credential,
        }

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        POSTs a JSON body and returns the decoded response.

        Raises:
            DispatchError: With the most specific message available (server
                message, else transport error text, else a generic fallback).
        """
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.post(
                url,
                json=body,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.timeout_sec,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            payload = None
            message = None
            try:
                payload = e.response.json() if e.response is not None else None
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                message = payload.get("message")
            raise DispatchError(message or str(e) or GENERIC_FAILURE_MESSAGE, status_code=status,
                                payload=payload if isinstance(payload, dict) else None) from e
        except requests.RequestException as e:
            raise DispatchError(str(e) or GENERIC_FAILURE_MESSAGE) from e
        except ValueError as e:
            raise DispatchError(f"Invalid response from verification service: {e}") from e

        if not isinstance(data, dict):
            raise DispatchError(GENERIC_FAILURE_MESSAGE)
        return data

    def _to_outcome(self, data: Dict[str, Any], success_fallback: str) -> VerificationOutcome:
        payload = data.get("data")
        if data.get("success"):
            return VerificationOutcome(True, data.get("message") or success_fallback, payload, "success")
        message = display_message(data.get("message") or DEFAULT_REJECTION_MESSAGE)
        alert = "warning" if isinstance(payload, dict) and payload.get("isUsed") else "error"
        return VerificationOutcome(False, message, payload, alert)

    def _from_error(self, error: DispatchError) -> VerificationOutcome:
        message = display_message(error.message or GENERIC_FAILURE_MESSAGE)
        # A 400 with a server message is a business rejection (e.g. ticket already used), not a fault.
        if error.status_code == 400 and error.payload and error.payload.get("message"):
            return VerificationOutcome(False, message, error.payload.get("data"), "warning")
        return VerificationOutcome(False, message, None, "error")

    def verify(self, code: ClassifiedCode, operator: OperatorContext) -> VerificationOutcome:
        """
        Asks the verification service for the attendee behind a code.

        Raises:
            PreconditionError: No operator credential; nothing is sent.
        """
        credential = operator.require()
        body = self.build_request(code, credential)
        self.logger.info(f"Verifying {body['codeType']} code...")
        try:
            data = self._post(self.details_path, body)
        except DispatchError as e:
            self.logger.error(f"Verification request failed: {e.message}")
            return self._from_error(e)

        outcome = self._to_outcome(data, DEFAULT_SUCCESS_MESSAGE)
        self.logger.info(f"Verification {'succeeded' if outcome.success else 'rejected'}: {outcome.message}")
        return outcome

    def confirm_attendance(self, code: ClassifiedCode, operator: OperatorContext) -> VerificationOutcome:
        """Marks the attendee behind a verified code as attended."""
        credential = operator.require()
        body = self.build_request(code, credential)
        self.logger.info(f"Confirming attendance for {body['codeType']} code...")
        try:
            data = self._post(self.attendance_path, body)
        except DispatchError as e:
            self.logger.error(f"Attendance confirmation failed: {e.message}")
            return self._from_error(e)
        return self._to_outcome(data, "Attendance confirmed.")

    def check_operator_access(self, operator: OperatorContext) -> VerificationOutcome:
        """Validates the inspector's access code with the service."""
        credential = operator.require()
        try:
            data = self._post(self.operator_access_path, {"sixDigitCode": credential})
        except DispatchError as e:
            self.logger.error(f"Inspector access check failed: {e.message}")
            return VerificationOutcome(False, e.message or "Inspector access verification failed. Please try again.")
        if data.get("success"):
            return VerificationOutcome(True, data.get("message") or "Access granted!", data.get("data"), "success")
        return VerificationOutcome(False, data.get("message") or "Invalid inspector code. Please try again.", data.get("data"))
