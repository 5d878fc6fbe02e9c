# Directory: /
# Filename: checkin_toolkit.py

import logging
import sys
import os
import atexit
import datetime
import threading

# --- Path Setup & Run Context ---
PROJECT_ROOT_FOR_GLOBAL = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT_FOR_GLOBAL not in sys.path:
    sys.path.insert(0, PROJECT_ROOT_FOR_GLOBAL)

# Format: YYYY-MM-DD_HH-MM-SS
RUN_TIMESTAMP = datetime.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
RUN_OUTPUT_DIR = os.path.join(PROJECT_ROOT_FOR_GLOBAL, "logs", RUN_TIMESTAMP)
os.makedirs(RUN_OUTPUT_DIR, exist_ok=True)

# --- Logging first, so every later import logs into this run's directory ---
from utils.logging_config import setup_logging

run_log_file = os.path.join(RUN_OUTPUT_DIR, "checkin.log")
setup_logging(log_file_path=run_log_file, log_file_mode="w")

checkin_logger = logging.getLogger("CheckIn")

from camera.camera_controller import CameraSessionManager, FrameSurface
from camera.decoders import OpenCVQrDecoder, ZbarStreamingDecoder
from controllers.acquisition_channels import HidChannel, InputMode, OpticalChannel
from controllers.checkin_fsm import CheckInCoordinator
from controllers.operator_context import OperatorContext
from controllers.verification_dispatcher import VerificationDispatcher
from hardware.barcode_scanner import KeystrokeAggregator, PynputKeyboardSource
from utils.scheduler import CallbackScheduler
from utils.settings import load_checkin_settings

settings = load_checkin_settings()
api_settings = settings["api"]
camera_settings = settings["camera"]
keystroke_settings = settings["keystroke"]

scheduler = CallbackScheduler(logger_instance=checkin_logger.getChild("Scheduler"))
operator = OperatorContext()

camera = CameraSessionManager(
    facing_camera_ids=camera_settings["facing_camera_ids"],
    resolution=tuple(camera_settings["resolution"]),
    strict_resolution=camera_settings["strict_resolution"],
    attach_retry_delays_sec=tuple(camera_settings["attach_retry_delays_sec"]),
    fallback_facing=camera_settings["fallback_facing"],
    logger_instance=checkin_logger.getChild("Camera"),
)
preview_surface = FrameSurface()

dispatcher = VerificationDispatcher(
    base_url=api_settings["base_url"],
    timeout_sec=api_settings["timeout_sec"],
    details_path=api_settings["details_path"],
    attendance_path=api_settings["attendance_path"],
    operator_access_path=api_settings["operator_access_path"],
    logger_instance=checkin_logger.getChild("Dispatcher"),
)

# Set while the console reads from stdin; wedge keystrokes are ignored meanwhile.
console_prompt_active = threading.Event()

# The HID channel installs the real sinks on activation.
aggregator = KeystrokeAggregator(
    scheduler,
    on_code=lambda acquisition, classified: None,
    reset_threshold_sec=keystroke_settings["reset_threshold_sec"],
    finalize_delay_sec=keystroke_settings["finalize_delay_sec"],
    keyboard_source=PynputKeyboardSource(scheduler, editable_focus_probe=console_prompt_active.is_set),
    logger_instance=checkin_logger.getChild("Keystrokes"),
)

channels = {
    InputMode.OPTICAL_QR: OpticalChannel(
        InputMode.OPTICAL_QR, scheduler, camera, OpenCVQrDecoder,
        surface_provider=lambda: preview_surface,
        facing=camera_settings["facing"],
        scan_interval_sec=camera_settings["scan_interval_sec"],
    ),
    InputMode.OPTICAL_BARCODE: OpticalChannel(
        InputMode.OPTICAL_BARCODE, scheduler, camera, ZbarStreamingDecoder,
        surface_provider=lambda: preview_surface,
        facing=camera_settings["facing"],
    ),
    InputMode.HID: HidChannel(aggregator),
}

coordinator = None
try:
    coordinator = CheckInCoordinator(
        scheduler,
        channels,
        dispatcher,
        operator,
        mode=settings["terminal"]["default_mode"],
        logger_instance=checkin_logger.getChild("Coordinator"),
    )
    checkin_logger.info(f"Global coordinator initialized. Initial state: {coordinator.state}")
except Exception as e_coord_create:
    checkin_logger.critical(f"Failed to create global coordinator: {e_coord_create}", exc_info=True)


def get_scheduler():
    return scheduler


def get_operator():
    return operator


def get_dispatcher():
    return dispatcher


def get_console_prompt_flag():
    return console_prompt_active


def get_coordinator():
    if coordinator is None:
        raise RuntimeError("Global coordinator was not successfully initialized.")
    return coordinator


# --- Resource cleanup ---
def _cleanup_global_terminal():
    try:
        if coordinator is not None:
            coordinator.shutdown()
        camera.release()
        checkin_logger.info("Check-in terminal resources released.")
    except Exception as e_close:
        checkin_logger.error(f"Error during check-in terminal cleanup: {e_close}", exc_info=True)


if 'pytest' not in sys.modules:
    atexit.register(_cleanup_global_terminal)
else:
    checkin_logger.debug("Pytest is running. Skipping atexit registration for the check-in terminal.")

checkin_logger.info("")
checkin_logger.info("____"*10)
checkin_logger.info("")
