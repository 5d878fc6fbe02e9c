# Directory: camera
# Filename: scan_loop.py

import logging
from typing import Any, Callable, Optional

import numpy as np

from utils.code_classifier import CHANNEL_OPTICAL_BARCODE, CHANNEL_OPTICAL_QR, RawAcquisition
from utils.scheduler import CallbackScheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_SCAN_INTERVAL_SEC = 0.1


class StillFrameScanLoop:
    """
    Periodic still-frame sampling for QR codes.

    Every interval, if the surface has a frame with non-zero dimensions, the
    frame is copied into an off-screen buffer and handed to the still decoder.
    The first hit is forwarded as an 'optical-qr' acquisition and sampling
    pauses until resume(). After a plain resume() the payload last handed on
    is not forwarded again until a frame decodes to nothing or to another
    payload; resume(fresh=True) forgets it.
    """

    def __init__(self,
                 scheduler: CallbackScheduler,
                 surface: Any,
                 decoder: Any,
                 on_acquisition: Callable[[RawAcquisition], None],
                 interval_sec: float = DEFAULT_SCAN_INTERVAL_SEC,
                 logger_instance: Optional[logging.Logger] = None):
        self.scheduler = scheduler
        self.surface = surface
        self.decoder = decoder
        self.on_acquisition = on_acquisition
        self.interval_sec = interval_sec
        self.logger = logger_instance if logger_instance else logger
        self._timer: Optional[TimerHandle] = None
        self._buffer: Optional[np.ndarray] = None
        self._last_delivered: Optional[str] = None
        self.running = False

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._schedule()
        self.logger.debug(f"Still-frame QR sampling every {self.interval_sec * 1000:.0f}ms.")

    def resume(self, fresh: bool = False) -> None:
        if fresh:
            self._last_delivered = None
        self.start()

    def stop(self) -> None:
        self.running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self) -> None:
        self._timer = self.scheduler.call_later(self.interval_sec, self._tick)

    def _copy_to_buffer(self, frame: np.ndarray) -> np.ndarray:
        if self._buffer is None or self._buffer.shape != frame.shape or self._buffer.dtype != frame.dtype:
            self._buffer = np.empty_like(frame)
        np.copyto(self._buffer, frame)
        return self._buffer

    def _tick(self) -> None:
        self._timer = None
        if not self.running:
            return

        frame = self.surface.current_frame()
        width, height = self.surface.frame_size()
        if frame is not None and width > 0 and height > 0:
            pixels = self._copy_to_buffer(frame)
            text = self.decoder.decode(pixels, width, height)
            if text and text != self._last_delivered:
                self.logger.info(f"QR code detected ({len(text)} chars).")
                self.running = False
                if self.on_acquisition(RawAcquisition(text, CHANNEL_OPTICAL_QR)) is not False:
                    self._last_delivered = text
                return
            if not text:
                self._last_delivered = None

        if self.running:
            self._schedule()


class StreamingScanLoop:
    """
    Continuous streaming decode for barcodes.

    The surface is handed to the streaming decoder once; every payload it
    reports is marshalled onto the scheduler thread and forwarded as an
    'optical-barcode' acquisition. A payload the sink turns away is handed
    back to the decoder on resume(), so it is reported again if still in view.
    """

    def __init__(self,
                 scheduler: CallbackScheduler,
                 surface: Any,
                 decoder: Any,
                 on_acquisition: Callable[[RawAcquisition], None],
                 logger_instance: Optional[logging.Logger] = None):
        self.scheduler = scheduler
        self.surface = surface
        self.decoder = decoder
        self.on_acquisition = on_acquisition
        self.logger = logger_instance if logger_instance else logger
        self._turned_away: Optional[str] = None
        self.running = False

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.decoder.attach_to_stream(self.surface, self._on_decoded)
        self.logger.debug("Streaming barcode decode attached to surface.")

    def resume(self, fresh: bool = False) -> None:
        # The decoder never pauses; hits are gated by the coordinator.
        if fresh:
            self.decoder.forget()
        elif self._turned_away is not None:
            self.decoder.forget(self._turned_away)
        self._turned_away = None

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        self.decoder.reset()

    def _on_decoded(self, text: str) -> None:
        # Called from the decoder's worker thread.
        self.scheduler.call_soon_threadsafe(self._deliver, text)

    def _deliver(self, text: str) -> None:
        if not self.running:
            return
        self.logger.info(f"Barcode detected: '{text}'.")
        if self.on_acquisition(RawAcquisition(text, CHANNEL_OPTICAL_BARCODE)) is False:
            self._turned_away = text
        else:
            self._turned_away = None
