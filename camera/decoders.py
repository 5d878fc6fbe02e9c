# Directory: camera
# Filename: decoders.py

"""
Decoder capabilities consumed by the optical scan loop.

- OpenCVQrDecoder: still-image decode, decode(pixels, width, height) -> str | None.
- ZbarStreamingDecoder: streaming decode over a live surface, with
  attach_to_stream(surface, callback) and reset().
"""

import logging
import threading
from typing import Any, Callable, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_STREAM_POLL_INTERVAL_SEC = 0.05


class OpenCVQrDecoder:
    """Still-frame QR decoding with cv2.QRCodeDetector."""

    def __init__(self, detector: Optional[Any] = None, logger_instance: Optional[logging.Logger] = None):
        self.detector = detector if detector is not None else cv2.QRCodeDetector()
        self.logger = logger_instance if logger_instance else logger

    def decode(self, pixels: np.ndarray, width: int, height: int) -> Optional[str]:
        if pixels is None or width <= 0 or height <= 0:
            return None
        frame_h, frame_w = pixels.shape[:2]
        if (frame_w, frame_h) != (width, height):
            self.logger.debug(f"Frame is {frame_w}x{frame_h}, expected {width}x{height}; skipping.")
            return None
        try:
            text, _points, _straight = self.detector.detectAndDecode(pixels)
        except cv2.error as e:
            self.logger.debug(f"QR detector error on frame: {e}")
            return None
        return text or None


def _load_zbar_decode() -> Callable:
    # pyzbar loads the zbar shared library at import time.
    from pyzbar.pyzbar import decode
    return decode


class ZbarStreamingDecoder:
    """
    Continuous barcode decoding with pyzbar.

    attach_to_stream() starts a worker thread that keeps pulling frames from the
    surface and calls the callback (from the worker thread) for every payload
    it decodes. A symbol held in view is reported once, until it leaves the
    frame or forget() is called. reset() stops the worker; it is safe to call
    repeatedly.
    """

    def __init__(self,
                 decode_fn: Optional[Callable] = None,
                 poll_interval_sec: float = DEFAULT_STREAM_POLL_INTERVAL_SEC,
                 logger_instance: Optional[logging.Logger] = None):
        self._decode_fn = decode_fn
        self.poll_interval_sec = poll_interval_sec
        self.logger = logger_instance if logger_instance else logger
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._dedupe_lock = threading.Lock()
        self._last_reported: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def decode_frame(self, frame: np.ndarray) -> Optional[str]:
        """Decodes one frame, returning the first non-empty payload."""
        if self._decode_fn is None:
            self._decode_fn = _load_zbar_decode()
        for symbol in self._decode_fn(frame):
            data = symbol.data.decode("utf-8", errors="replace").strip()
            if data:
                return data
        return None

    def attach_to_stream(self, surface: Any, on_decoded: Callable[[str], None]) -> None:
        if self._thread is not None:
            raise RuntimeError("Streaming decoder is already attached; call reset() first.")
        if self._decode_fn is None:
            self._decode_fn = _load_zbar_decode()
        self._stop_event.clear()
        self._last_reported = None
        self._thread = threading.Thread(target=self._run, args=(surface, on_decoded), daemon=True)
        self._thread.start()
        self.logger.debug("Streaming barcode decoder started.")

    def _run(self, surface: Any, on_decoded: Callable[[str], None]) -> None:
        while not self._stop_event.is_set():
            try:
                frame = surface.current_frame()
            except Exception as e:
                # Stream released underneath us; reset() follows.
                self.logger.debug(f"Streaming decoder stopped reading frames: {e}")
                break
            if frame is not None:
                data = self.decode_frame(frame)
                with self._dedupe_lock:
                    is_new = bool(data) and data != self._last_reported
                    self._last_reported = data
                if is_new:
                    on_decoded(data)
            self._stop_event.wait(self.poll_interval_sec)

    def forget(self, data: Optional[str] = None) -> None:
        """Lets the symbol last reported (or only `data`, if it is that one) be reported again."""
        with self._dedupe_lock:
            if data is None or data == self._last_reported:
                self._last_reported = None

    def reset(self) -> None:
        thread, self._thread = self._thread, None
        self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1)
            self.logger.debug("Streaming barcode decoder stopped.")
