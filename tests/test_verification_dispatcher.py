# Directory: tests/
# Filename: test_verification_dispatcher.py

#############################################################
##
## This test file is designed to systematically cover every function
## in controllers/verification_dispatcher.py.
##
## Run this test with the following command:
## pytest tests/test_verification_dispatcher.py --cov=controllers.verification_dispatcher --cov-report term-missing
##
#############################################################

from unittest.mock import MagicMock

import pytest
import requests

from controllers.operator_context import OperatorContext
from controllers.verification_dispatcher import (
    DEFAULT_BASE_URL,
    GENERIC_FAILURE_MESSAGE,
    VerificationDispatcher,
    VerificationOutcome,
    display_message,
)
from utils.checkin_errors import PreconditionError
from utils.code_classifier import ClassifiedCode, CodeKind

QR_TOKEN = "eyJ1bmlxdWVIYXNoIjoiM2Y5YjJjMWQ0ZTVmNmE3YjhjOWQwZTFmMmEzYjRjNWQifQ=="


def make_response(status=200, body=None, json_error=None):
    resp = MagicMock()
    resp.status_code = status
    if json_error is not None:
        resp.json.side_effect = json_error
    else:
        resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} Client Error", response=resp)
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def operator():
    return OperatorContext("482913")


@pytest.fixture
def dispatcher(session):
    return VerificationDispatcher(session=session, logger_instance=MagicMock())


class TestVerify:

    @pytest.mark.parametrize("code, expected_type", [
        (ClassifiedCode(QR_TOKEN, CodeKind.OPTICAL_PAYLOAD), "QR_CODE"),
        (ClassifiedCode("999999", CodeKind.SIX_DIGIT), "SIX_DIGIT_CODE"),
        (ClassifiedCode("1234567", CodeKind.SEVEN_DIGIT), "SEVEN_DIGIT_CODE"),
        (ClassifiedCode("4006381333931", CodeKind.BARCODE_PAYLOAD), "BARCODE"),
    ])
    def test_request_wire_format(self, dispatcher, session, operator, code, expected_type):
        session.post.return_value = make_response(body={"success": True, "data": {}})

        dispatcher.verify(code, operator)

        url = session.post.call_args[0][0]
        kwargs = session.post.call_args.kwargs
        assert url == f"{DEFAULT_BASE_URL}/event/free-check-in/details"
        assert kwargs["json"] == {"ticketCode": code.normalized_code, "codeType": expected_type, "sixDigitCode": "482913"}
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert kwargs["timeout"] == 20

    def test_success_outcome(self, dispatcher, session, operator):
        attendee = {"attendeeName": "Ada", "eventName": "Launch"}
        session.post.return_value = make_response(body={"success": True, "message": "Welcome!", "data": attendee})

        outcome = dispatcher.verify(ClassifiedCode(QR_TOKEN, CodeKind.OPTICAL_PAYLOAD), operator)
        assert outcome == VerificationOutcome(True, "Welcome!", attendee, "success")

    def test_success_without_message_uses_default(self, dispatcher, session, operator):
        session.post.return_value = make_response(body={"success": True})
        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome.message == "Invitation details fetched successfully!"

    def test_not_registered_message_is_rewritten(self, dispatcher, session, operator):
        session.post.return_value = make_response(body={"success": False, "message": "Free registration not found."})

        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome.success is False
        assert outcome.message == "User not registered."
        assert outcome.alert_type == "error"

    def test_used_ticket_is_a_warning(self, dispatcher, session, operator):
        session.post.return_value = make_response(
            body={"success": False, "message": "Ticket already used.", "data": {"isUsed": True}})
        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome.alert_type == "warning"
        assert outcome.message == "Ticket already used."

    def test_http_error_uses_server_message(self, dispatcher, session, operator):
        session.post.return_value = make_response(404, body={"success": False, "message": "Free registration not found."})

        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome == VerificationOutcome(False, "User not registered.", None, "error")

    def test_http_400_with_message_is_a_warning(self, dispatcher, session, operator):
        session.post.return_value = make_response(
            400, body={"message": "Attendance already recorded.", "data": {"checkedInAt": "10:02"}})

        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome.alert_type == "warning"
        assert outcome.payload == {"checkedInAt": "10:02"}

    def test_http_error_without_json_falls_back_to_error_text(self, dispatcher, session, operator):
        session.post.return_value = make_response(500, json_error=ValueError("no json"))

        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome.success is False
        assert "500" in outcome.message

    def test_transport_error_message(self, dispatcher, session, operator):
        session.post.side_effect = requests.ConnectionError("Connection refused")

        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome == VerificationOutcome(False, "Connection refused", None, "error")

    def test_empty_transport_error_uses_generic_message(self, dispatcher, session, operator):
        session.post.side_effect = requests.Timeout()

        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome.message == GENERIC_FAILURE_MESSAGE

    def test_invalid_json_body(self, dispatcher, session, operator):
        session.post.return_value = make_response(json_error=ValueError("Expecting value"))

        outcome = dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert outcome.success is False
        assert "Invalid response" in outcome.message

    def test_missing_credential_sends_nothing(self, dispatcher, session):
        with pytest.raises(PreconditionError):
            dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), OperatorContext())
        session.post.assert_not_called()


class TestOtherEndpoints:

    def test_confirm_attendance(self, dispatcher, session, operator):
        session.post.return_value = make_response(body={"success": True, "message": "Checked in."})

        outcome = dispatcher.confirm_attendance(ClassifiedCode("1234567", CodeKind.SEVEN_DIGIT), operator)
        assert session.post.call_args[0][0].endswith("/event/free-check-in")
        assert outcome.success and outcome.message == "Checked in."

    def test_check_operator_access(self, dispatcher, session, operator):
        session.post.return_value = make_response(body={"success": True, "data": {"eventId": 3}})

        outcome = dispatcher.check_operator_access(operator)
        assert session.post.call_args[0][0].endswith("/event/check-in-staff/validate-code")
        assert session.post.call_args.kwargs["json"] == {"sixDigitCode": "482913"}
        assert outcome == VerificationOutcome(True, "Access granted!", {"eventId": 3}, "success")

    def test_check_operator_access_rejected(self, dispatcher, session, operator):
        session.post.return_value = make_response(403, body={"message": "Code expired."})
        outcome = dispatcher.check_operator_access(operator)
        assert outcome.success is False
        assert outcome.message == "Code expired."

    def test_custom_base_url_trailing_slash(self, session, operator):
        dispatcher = VerificationDispatcher(base_url="http://localhost:8000/api/v1/", session=session, timeout_sec=5,
                                            logger_instance=MagicMock())
        session.post.return_value = make_response(body={"success": True})
        dispatcher.verify(ClassifiedCode("999999", CodeKind.SIX_DIGIT), operator)
        assert session.post.call_args[0][0] == "http://localhost:8000/api/v1/event/free-check-in/details"
        assert session.post.call_args.kwargs["timeout"] == 5


def test_display_message_only_rewrites_not_registered():
    assert display_message("Free registration not found.") == "User not registered."
    assert display_message("Event not found.") == "Event not found."
