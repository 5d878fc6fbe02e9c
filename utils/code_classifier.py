# Directory: utils/
# Filename: code_classifier.py

import base64
import binascii
import json
import logging
import re
from enum import Enum
from typing import NamedTuple, Optional

from utils.checkin_errors import InvalidFormatError

logger = logging.getLogger(__name__)

# --- Channel tags ---
CHANNEL_OPTICAL_QR = "optical-qr"
CHANNEL_OPTICAL_BARCODE = "optical-barcode"
CHANNEL_HID = "hid"
CHANNEL_MANUAL = "manual"

_SEVEN_DIGIT_RUN = re.compile(r"\d{7}")
_SIX_DIGIT_RUN = re.compile(r"\d{6}")


class CodeKind(Enum):
    SIX_DIGIT = "SixDigit"
    SEVEN_DIGIT = "SevenDigit"
    OPTICAL_PAYLOAD = "OpticalPayload"
    BARCODE_PAYLOAD = "BarcodePayload"


class RawAcquisition(NamedTuple):
    raw: str
    channel: str


class ClassifiedCode(NamedTuple):
    normalized_code: str
    kind: CodeKind


def _is_digit_string(value: str) -> bool:
    # str.isdigit() also accepts superscripts and other Unicode digits.
    return bool(value) and all(ch in "0123456789" for ch in value)


def classify(raw: Optional[str], channel_hint: Optional[str] = None) -> ClassifiedCode:
    """
    Maps a raw acquired string to a normalized code and its kind.

    Rules, evaluated in order:
    1. Any non-digit character: optical payload, accepted as-is.
    2. An embedded run of 7 consecutive digits: that run, SEVEN_DIGIT.
    3. An embedded run of 6 consecutive digits: that run, SIX_DIGIT.
    4. The whole string is 6 or 7 digits: used directly.
    Anything else is rejected.

    A barcode channel hint overrides the shape rules, since barcode payloads
    cannot be told apart from 6/7-digit codes by shape alone.

    Args:
        raw: The string produced by an acquisition channel.
        channel_hint: The channel tag the string came from, if known.

    Returns:
        The ClassifiedCode.

    Raises:
        InvalidFormatError: If the string is empty or matches no rule.
    """
    text = str(raw).strip() if raw is not None else ""
    if not text:
        raise InvalidFormatError("Empty code.")

    if channel_hint == CHANNEL_OPTICAL_BARCODE:
        return ClassifiedCode(text, CodeKind.BARCODE_PAYLOAD)

    if not _is_digit_string(text):
        return ClassifiedCode(text, CodeKind.OPTICAL_PAYLOAD)

    match = _SEVEN_DIGIT_RUN.search(text)
    if match:
        return ClassifiedCode(match.group(0), CodeKind.SEVEN_DIGIT)

    match = _SIX_DIGIT_RUN.search(text)
    if match:
        return ClassifiedCode(match.group(0), CodeKind.SIX_DIGIT)

    # Rule 4. The run searches above already cover every pure 6/7 digit string.
    if len(text) == 7:
        return ClassifiedCode(text, CodeKind.SEVEN_DIGIT)
    if len(text) == 6:
        return ClassifiedCode(text, CodeKind.SIX_DIGIT)

    raise InvalidFormatError(
        f"Invalid code format '{text}'. Please scan a valid invitation code or QR code."
    )


def classify_acquisition(acquisition: RawAcquisition) -> ClassifiedCode:
    """Classifies a RawAcquisition, passing its channel through as the hint."""
    return classify(acquisition.raw, channel_hint=acquisition.channel)


def inspect_optical_payload(text: str) -> Optional[dict]:
    """
    Best-effort look inside a QR ticket token.

    Ticket QR codes usually carry a base64-encoded JSON document with a
    'uniqueHash'. The token is always sent to the service as-is; this only
    exists for diagnostics, so any decode failure just returns None.
    """
    try:
        decoded = base64.b64decode(text, validate=True)
        data = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        logger.debug(f"Optical payload is not a base64 JSON token, using raw data: {e}")
        return None

    if not isinstance(data, dict):
        return None
    if "uniqueHash" not in data:
        logger.warning("Decoded optical payload has no 'uniqueHash'; sending raw data anyway.")
    return data
