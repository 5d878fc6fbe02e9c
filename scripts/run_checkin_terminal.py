# Directory: scripts
# Filename: run_checkin_terminal.py
#!/usr/bin/env python3

import sys
import os
import argparse
import getpass
import logging
import time

# --- Path Setup ---
SCRIPT_DIR_CHECKIN = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT_CHECKIN = os.path.dirname(SCRIPT_DIR_CHECKIN)
if PROJECT_ROOT_CHECKIN not in sys.path:
    sys.path.insert(0, PROJECT_ROOT_CHECKIN)
# --- End Path Setup ---

from controllers.acquisition_channels import InputMode

script_logger = logging.getLogger("run_checkin_terminal")

MANUAL_RESULT_TIMEOUT_SEC = 60.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Event check-in terminal: scan tickets and verify attendees.")
    parser.add_argument("--operator-code", default=os.environ.get("CHECKIN_OPERATOR_CODE"),
                        help="6-digit inspector access code (default: CHECKIN_OPERATOR_CODE, else prompt).")
    parser.add_argument("--mode", choices=[m.value for m in InputMode], default=None,
                        help="Input mode to start in (default: from settings).")
    parser.add_argument("--manual", metavar="CODE", default=None,
                        help="Verify a single typed code and exit.")
    parser.add_argument("--skip-access-check", action="store_true",
                        help="Do not validate the inspector code with the service before starting.")
    parser.add_argument("--auto-reset-sec", type=float, default=3.0,
                        help="Seconds a successful result stays on screen before scanning resumes (0 = wait forever).")
    return parser


def print_status(coordinator) -> None:
    if coordinator.state == 'RESULT' and coordinator.last_result is not None:
        result = coordinator.last_result
        print(f"[{result.alert_type.upper()}] {result.message}")
        if result.payload:
            for key, value in result.payload.items():
                print(f"    {key}: {value}")
    elif coordinator.error_message:
        print(f"[ERROR] {coordinator.error_message}")
    if coordinator.attendance_result is not None:
        print(f"[ATTENDANCE] {coordinator.attendance_result.message}")


def sign_in(operator, dispatcher, code, skip_access_check, prompt_flag=None) -> bool:
    if not code:
        if prompt_flag is not None:
            prompt_flag.set()
        try:
            code = getpass.getpass("Inspector access code: ")
        finally:
            if prompt_flag is not None:
                prompt_flag.clear()
    try:
        operator.sign_in(code)
    except ValueError as e:
        print(e)
        return False
    if skip_access_check:
        return True
    outcome = dispatcher.check_operator_access(operator)
    print(outcome.message)
    if not outcome.success:
        operator.sign_out()
    return outcome.success


def run_manual(coordinator, scheduler, code) -> int:
    # No channel is needed for a typed code.
    coordinator.set_page_hidden(True)
    coordinator.start()
    if not coordinator.submit_manual_code(code):
        print_status(coordinator)
        return 1

    deadline = time.monotonic() + MANUAL_RESULT_TIMEOUT_SEC
    while coordinator.state not in ('RESULT', 'IDLE') and time.monotonic() < deadline:
        scheduler.run_pending()
        time.sleep(0.05)

    if coordinator.state != 'RESULT':
        print("No verification result received.")
        return 1
    print_status(coordinator)
    return 0 if coordinator.last_result.success else 1


def run_terminal(coordinator, scheduler, auto_reset_sec) -> int:
    def on_state_change(model):
        print_status(model)
        if model.state == 'RESULT' and model.last_result and model.last_result.success and auto_reset_sec > 0:
            scheduler.call_later(auto_reset_sec, model.scan_another)

    def on_reauthenticate(message):
        print(message)
        scheduler.stop()

    coordinator.on_state_change = on_state_change
    coordinator.on_reauthenticate = on_reauthenticate
    coordinator.start()
    print(f"Scanning in '{coordinator.mode.value}' mode. Press Ctrl+C to exit.")
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        print("\nStopping check-in terminal.")
    finally:
        coordinator.shutdown()
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        from checkin_toolkit import (
            get_console_prompt_flag, get_coordinator, get_dispatcher, get_operator, get_scheduler,
        )
        coordinator = get_coordinator()
    except Exception as e:
        logging.basicConfig(level=logging.CRITICAL)
        logging.critical(f"Failed to set up the check-in terminal: {e}", exc_info=True)
        return 2

    if not sign_in(get_operator(), get_dispatcher(), args.operator_code, args.skip_access_check,
                   prompt_flag=get_console_prompt_flag()):
        return 1

    if args.mode:
        coordinator.mode = InputMode(args.mode)

    if args.manual is not None:
        return run_manual(coordinator, get_scheduler(), args.manual)
    return run_terminal(coordinator, get_scheduler(), args.auto_reset_sec)


if __name__ == "__main__":
    sys.exit(main())
