# Directory: hardware
# Filename: barcode_scanner.py

import sys
import logging
from typing import Any, Callable, List, NamedTuple, Optional

from utils.checkin_errors import InvalidFormatError
from utils.code_classifier import CHANNEL_HID, ClassifiedCode, RawAcquisition, classify
from utils.scheduler import CallbackScheduler, TimerHandle

# Import platform-specific modules for flushing input
if sys.platform == "win32":
    import msvcrt
else:
    # termios works on both Linux and macOS
    import termios # pragma: no cover

logger = logging.getLogger(__name__)

DEFAULT_RESET_THRESHOLD_SEC = 0.5
DEFAULT_FINALIZE_DELAY_SEC = 0.2
DIGIT_KEYS = "0123456789"
FINALIZE_KEYS = ("enter", "tab")


class KeyEvent(NamedTuple):
    """A keyboard event, normalized away from the listener backend."""
    key: str
    editable_focus: bool = False


def flush_terminal_input() -> None:
    """Drops any buffered keystrokes so scanner input does not leak into the terminal."""
    try:
        if sys.platform == "win32":
            while msvcrt.kbhit():
                msvcrt.getch()
        else:
            termios.tcflush(sys.stdin, termios.TCIOFLUSH)
    except Exception as e:
        logger.warning(f"Could not flush stdin buffer: {e}")


def key_event_from_pynput(key: Any, keyboard_module: Any, editable_focus: bool = False) -> KeyEvent:
    """Translates a pynput Key/KeyCode into a KeyEvent."""
    if key == keyboard_module.Key.enter:
        return KeyEvent("enter", editable_focus)
    if key == keyboard_module.Key.tab:
        return KeyEvent("tab", editable_focus)
    char = getattr(key, "char", None)
    if char:
        return KeyEvent(char, editable_focus)
    name = getattr(key, "name", None) or str(key)
    return KeyEvent(f"<{name}>", editable_focus)


class PynputKeyboardSource:
    """
    Feeds global keyboard events from a pynput listener into the scheduler thread.

    pynput is imported on start() because its backends need a desktop session
    (an X display on Linux) to load.
    """

    def __init__(self, scheduler: CallbackScheduler,
                 editable_focus_probe: Optional[Callable[[], bool]] = None,
                 logger_instance: Optional[logging.Logger] = None):
        self.scheduler = scheduler
        self.editable_focus_probe = editable_focus_probe
        self.logger = logger_instance if logger_instance else logger
        self._listener = None

    @property
    def is_running(self) -> bool:
        return self._listener is not None

    def start(self, handler: Callable[[KeyEvent], bool]) -> None:
        if self._listener is not None:
            return
        from pynput import keyboard

        def on_press(key):
            focused = bool(self.editable_focus_probe()) if self.editable_focus_probe else False
            self.scheduler.call_soon_threadsafe(handler, key_event_from_pynput(key, keyboard, focused))

        self._listener = keyboard.Listener(on_press=on_press)
        self._listener.start()
        self.logger.debug("Keyboard listener started.")

    def stop(self) -> None:
        if self._listener is None:
            return
        listener, self._listener = self._listener, None
        listener.stop()
        listener.join()
        flush_terminal_input()
        self.logger.debug("Keyboard listener stopped.")

    def consume_pending_input(self) -> None:
        flush_terminal_input()


class KeystrokeAggregator:
    """
    Turns keyboard-wedge scanner keystrokes into classified codes.

    Digits are buffered. A gap longer than the reset threshold since the last
    accepted digit discards the buffer (slow human typing), every digit restarts
    the finalize timer, and Enter/Tab finalize immediately. Finalization
    classifies the buffer with the 'hid' channel hint and clears it; a format
    rejection is reported through on_error and the aggregator stays ready.
    """

    def __init__(self,
                 scheduler: CallbackScheduler,
                 on_code: Callable[[RawAcquisition, ClassifiedCode], None],
                 on_error: Optional[Callable[[RawAcquisition, InvalidFormatError], None]] = None,
                 reset_threshold_sec: float = DEFAULT_RESET_THRESHOLD_SEC,
                 finalize_delay_sec: float = DEFAULT_FINALIZE_DELAY_SEC,
                 keyboard_source: Optional[PynputKeyboardSource] = None,
                 logger_instance: Optional[logging.Logger] = None):
        self.scheduler = scheduler
        self.on_code = on_code
        self.on_error = on_error
        self.reset_threshold_sec = reset_threshold_sec
        self.finalize_delay_sec = finalize_delay_sec
        self.keyboard_source = keyboard_source
        self.logger = logger_instance if logger_instance else logger

        self._buffer: List[str] = []
        self._last_key_time: Optional[float] = None
        self._finalize_timer: Optional[TimerHandle] = None
        self.is_attached = False

    @property
    def buffer(self) -> str:
        return "".join(self._buffer)

    def attach(self) -> None:
        if self.is_attached:
            return
        self._reset_buffer()
        self.is_attached = True
        if self.keyboard_source is not None:
            self.keyboard_source.start(self.on_key_event)
        self.logger.info("HID scanner channel attached.")

    def detach(self) -> None:
        if not self.is_attached:
            return
        self.is_attached = False
        self._cancel_finalize_timer()
        self._reset_buffer()
        if self.keyboard_source is not None:
            self.keyboard_source.stop()
        self.logger.info("HID scanner channel detached.")

    def on_key_event(self, event: KeyEvent) -> bool:
        """
        Handles one keyboard event.

        Returns:
            True if the event was consumed by the aggregator.
        """
        if not self.is_attached or event.editable_focus:
            return False

        if event.key in FINALIZE_KEYS:
            self._cancel_finalize_timer()
            if not self._buffer:
                return False
            self.finalize()
            if self.keyboard_source is not None:
                self.keyboard_source.consume_pending_input()
            return True

        if len(event.key) == 1 and event.key in DIGIT_KEYS:
            now = self.scheduler.now()
            if self._last_key_time is not None and now - self._last_key_time > self.reset_threshold_sec:
                if self._buffer:
                    self.logger.debug(f"Keystroke gap {now - self._last_key_time:.3f}s; discarding stale buffer '{self.buffer}'.")
                self._buffer = []
            self._last_key_time = now
            self._buffer.append(event.key)
            self._cancel_finalize_timer()
            self._finalize_timer = self.scheduler.call_later(self.finalize_delay_sec, self._on_finalize_timer)
            return True

        return False

    def _on_finalize_timer(self) -> None:
        self._finalize_timer = None
        self.finalize()

    def _cancel_finalize_timer(self) -> None:
        if self._finalize_timer is not None:
            self._finalize_timer.cancel()
            self._finalize_timer = None

    def _reset_buffer(self) -> None:
        self._buffer = []
        self._last_key_time = None

    def finalize(self) -> None:
        """Classifies and clears the buffer. Does nothing when the buffer is empty."""
        self._cancel_finalize_timer()
        if not self._buffer:
            return
        acquisition = RawAcquisition(self.buffer, CHANNEL_HID)
        self._buffer = []
        try:
            classified = classify(acquisition.raw, channel_hint=CHANNEL_HID)
        except InvalidFormatError as e:
            self.logger.warning(f"Rejected HID scan '{acquisition.raw}': {e}")
            if self.on_error is not None:
                self.on_error(acquisition, e)
            return
        self.logger.debug(f"HID scan captured '{classified.normalized_code}' ({classified.kind.value}).")
        self.on_code(acquisition, classified)
