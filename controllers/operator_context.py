# Directory: controllers
# Filename: operator_context.py

import logging
import re
from typing import Optional

from utils.checkin_errors import PreconditionError

logger = logging.getLogger(__name__)

OPERATOR_CODE_PATTERN = re.compile(r"^\d{6}$")
REAUTHENTICATE_MESSAGE = "Inspector access required. Please verify your access first."


def is_valid_operator_code(value: Optional[str]) -> bool:
    return bool(value) and bool(OPERATOR_CODE_PATTERN.match(value))


class OperatorContext:
    """
    Holds the inspector's access code for the current check-in shift.

    The code is set by the (external) inspector sign-in step and passed
    explicitly to the coordinator and the verification dispatcher.
    """

    def __init__(self, credential: Optional[str] = None):
        self.credential: Optional[str] = None
        if credential:
            self.sign_in(credential)

    @property
    def is_signed_in(self) -> bool:
        return bool(self.credential)

    def sign_in(self, credential: str) -> None:
        credential = str(credential).strip()
        if not is_valid_operator_code(credential):
            raise ValueError("Please enter a valid 6-digit inspector code.")
        self.credential = credential
        logger.info("Inspector signed in.")

    def sign_out(self) -> None:
        if self.credential:
            logger.info("Inspector signed out.")
        self.credential = None

    def require(self) -> str:
        """
        Returns the credential.

        Raises:
            PreconditionError: No inspector is signed in.
        """
        if not self.credential:
            raise PreconditionError(REAUTHENTICATE_MESSAGE)
        return self.credential
