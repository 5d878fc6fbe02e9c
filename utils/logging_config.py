# Directory: utils
# Filename: logging_config.py

import logging
import sys
import os

# Default log format (logger name omitted for cleaner terminal output)
DEFAULT_LOG_FORMAT = '%(asctime)s.%(msecs)03d  %(levelname)-8s  %(message)s'
DEFAULT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# --- Configuration for Specific Logger Levels ---
# Keys are logger names. 'root' is the default for unlisted loggers.
LOG_LEVEL_CONFIG = {
    "root": logging.INFO,
    "CheckIn": logging.INFO,
    "CheckIn.Coordinator": logging.INFO,
    "camera.camera_controller": logging.INFO,
    "camera.decoders": logging.INFO,
    "camera.scan_loop": logging.INFO, # DEBUG shows sampling start/stop
    "controllers.acquisition_channels": logging.INFO,
    "controllers.verification_dispatcher": logging.INFO,
    "controllers.operator_context": logging.INFO,
    "hardware.barcode_scanner": logging.INFO, # DEBUG for per-keystroke detail
    "utils.code_classifier": logging.INFO,
    "utils.scheduler": logging.INFO,
    "utils.settings": logging.INFO,
    "transitions": logging.WARNING,
    "urllib3": logging.WARNING,
    "requests": logging.WARNING,
}

# --- Configuration for Log Output ---
# LOG_FILE_PATH = "logs/checkin_activity.log"
# ENABLE_FILE_LOGGING = True
LOG_FILE_MODE = "a" # "a" for append, "w" for overwrite

ENABLE_CONSOLE_LOGGING = True


def _resolve_level(level):
    """Accepts a numeric level or a level name such as 'debug'."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {level}")
    return level


def _report(root_logger, console_enabled, level, message, **kwargs):
    # Before a console handler exists, setup problems go straight to stderr.
    if console_enabled:
        root_logger.log(level, message, **kwargs)
    else:
        print(message, file=sys.stderr)


def setup_logging(
    default_log_level=None,
    log_format=DEFAULT_LOG_FORMAT,
    date_format=DEFAULT_DATE_FORMAT,
    log_level_overrides=None,
    log_to_console=ENABLE_CONSOLE_LOGGING,
    log_file_path=None,
    log_file_mode=LOG_FILE_MODE
):
    """
    Configures the Python logging system for the check-in terminal.
    Call once at application start; calling again replaces the handlers.

    Returns:
        The merged {logger_name: level} map that was applied.
    """
    root_level = default_log_level if default_log_level is not None else LOG_LEVEL_CONFIG.get("root", logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format, datefmt=date_format)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file_path:
        try:
            log_dir = os.path.dirname(log_file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(log_file_path, mode=log_file_mode, encoding='utf-8')
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            _report(root_logger, log_to_console, logging.ERROR,
                    f"Error setting up file logging to '{log_file_path}': {e}", exc_info=True)

    levels = dict(LOG_LEVEL_CONFIG)
    levels.update(log_level_overrides or {})

    for logger_name, level in levels.items():
        if logger_name.lower() == "root":
            continue
        try:
            logging.getLogger(logger_name).setLevel(_resolve_level(level))
        except ValueError as e:
            _report(root_logger, log_to_console, logging.WARNING,
                    f"Warning: Could not set log level for '{logger_name}' to '{level}': {e}")

    startup_logger = logging.getLogger("LoggingConfig")
    file_status = f"'{log_file_path}'" if log_file_path else "Disabled"
    startup_logger.info(f"Logging configured. Root level: {logging.getLevelName(root_logger.level)}. Console: {log_to_console}, File: {file_status}.")
    startup_logger.debug(f"Specific logger levels applied: {levels}")
    return levels
