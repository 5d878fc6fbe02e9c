# Directory: utils
# Filename: settings.py

import copy
import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_utils_dir = os.path.dirname(os.path.abspath(__file__))
DEFAULT_SETTINGS_PATH = os.path.join(_utils_dir, 'config', 'checkin_settings.json')

DEFAULT_SETTINGS: Dict[str, Any] = {
    "api": {
        "base_url": "https://giraffespacev2.onrender.com/api/v1",
        "details_path": "/event/free-check-in/details",
        "attendance_path": "/event/free-check-in",
        "operator_access_path": "/event/check-in-staff/validate-code",
        "timeout_sec": 20,
    },
    "keystroke": {
        "reset_threshold_sec": 0.5,
        "finalize_delay_sec": 0.2,
    },
    "camera": {
        "facing": "environment",
        "fallback_facing": "user",
        "facing_camera_ids": {"environment": 0, "user": 1},
        "resolution": [1280, 720],
        "strict_resolution": False,
        "attach_retry_delays_sec": [0.1, 0.2],
        "scan_interval_sec": 0.1,
    },
    "terminal": {
        "default_mode": "optical-qr",
    },
}


def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_environment(settings: Dict[str, Any], environ: Mapping[str, str]) -> None:
    base_url = environ.get('CHECKIN_API_BASE_URL')
    if base_url:
        settings["api"]["base_url"] = base_url

    timeout = environ.get('CHECKIN_REQUEST_TIMEOUT_SEC')
    if timeout:
        try:
            settings["api"]["timeout_sec"] = float(timeout)
        except ValueError:
            logger.warning(f"Ignoring CHECKIN_REQUEST_TIMEOUT_SEC='{timeout}': not a number.")

    camera_id = environ.get('CHECKIN_CAMERA_ID')
    if camera_id:
        try:
            facing = settings["camera"]["facing"]
            settings["camera"]["facing_camera_ids"][facing] = int(camera_id)
        except ValueError:
            logger.warning(f"Ignoring CHECKIN_CAMERA_ID='{camera_id}': not an integer.")


def load_checkin_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Loads the terminal settings.

    The JSON file is merged over DEFAULT_SETTINGS, then environment overrides
    are applied. The file is taken from `path`, else CHECKIN_SETTINGS_PATH,
    else utils/config/checkin_settings.json.

    Raises:
        json.JSONDecodeError: The settings file exists but is not valid JSON.
    """
    environ = os.environ if environ is None else environ
    settings_path = path or environ.get('CHECKIN_SETTINGS_PATH') or DEFAULT_SETTINGS_PATH

    loaded: Dict[str, Any] = {}
    if not os.path.exists(settings_path):
        logger.warning(f"Settings file not found at '{settings_path}'. Using default settings.")
    else:
        try:
            logger.debug(f"Attempting to load settings from: {settings_path}")
            with open(settings_path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
            logger.info(f"Loaded settings from '{settings_path}'.")
        except json.JSONDecodeError:
            logger.critical(f"Could not parse '{settings_path}'. Check for syntax errors.")
            raise

    settings = _deep_merge(DEFAULT_SETTINGS, loaded if isinstance(loaded, dict) else {})
    _apply_environment(settings, environ)
    logger.debug(f"Effective settings: {settings}")
    return settings
