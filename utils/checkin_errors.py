# Directory: utils/
# Filename: checkin_errors.py

"""
Error taxonomy shared by the acquisition channels, the classifier, the
verification dispatcher and the coordinator.

Every failure is scoped to the current scan attempt; none of these is meant to
take the process down.
"""

from enum import Enum
from typing import Optional


class CheckInError(Exception):
    """Base class for all check-in engine failures."""
    pass


# --- Camera permission failures ---
class PermissionFailure(Enum):
    PERMISSION_DENIED = "PermissionDenied"
    NO_DEVICE_FOUND = "NoDeviceFound"
    CONSTRAINT_UNSATISFIABLE = "ConstraintUnsatisfiable"
    UNKNOWN = "Unknown"


PERMISSION_HINTS = {
    PermissionFailure.PERMISSION_DENIED: "Camera access denied. Please allow camera permission and try again.",
    PermissionFailure.NO_DEVICE_FOUND: "No camera found on this device.",
    PermissionFailure.CONSTRAINT_UNSATISFIABLE: "Camera not supported or constraints not satisfied.",
    PermissionFailure.UNKNOWN: "Camera access failed. You can still enter codes manually.",
}


class CameraPermissionError(CheckInError):
    """Camera could not be acquired. Carries a reason and an operator-facing hint."""

    def __init__(self, reason: PermissionFailure, detail: Optional[str] = None):
        self.reason = reason
        self.hint = PERMISSION_HINTS[reason]
        self.detail = detail
        message = f"{reason.value}: {self.hint}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidFormatError(CheckInError):
    """The classifier rejected the acquired string."""

    reason = "InvalidFormat"


class DispatchError(CheckInError):
    """Network or server failure while talking to the verification service."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


class PreconditionError(CheckInError):
    """The operator credential is missing; the operator has to re-authenticate."""
    pass


# --- Resource races ---
class ResourceRaceError(CheckInError):
    pass


class SurfaceNotReadyError(ResourceRaceError):
    pass


class StreamReleasedError(ResourceRaceError):
    pass
