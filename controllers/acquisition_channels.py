# Directory: controllers
# Filename: acquisition_channels.py

import logging
from enum import Enum
from typing import Any, Callable, Optional

from camera.camera_controller import DEFAULT_FACING, CameraSessionManager, FrameSurface
from camera.scan_loop import DEFAULT_SCAN_INTERVAL_SEC, StillFrameScanLoop, StreamingScanLoop
from hardware.barcode_scanner import KeystrokeAggregator
from utils.checkin_errors import InvalidFormatError
from utils.code_classifier import ClassifiedCode, RawAcquisition
from utils.scheduler import CallbackScheduler

logger = logging.getLogger(__name__)


class InputMode(Enum):
    OPTICAL_QR = "optical-qr"
    OPTICAL_BARCODE = "optical-barcode"
    HID = "hid"

    @property
    def is_optical(self) -> bool:
        return self in (InputMode.OPTICAL_QR, InputMode.OPTICAL_BARCODE)


# (acquisition, classified-or-None). HID classifies on its own; optical hits are classified by the coordinator.
CodeSink = Callable[[RawAcquisition, Optional[ClassifiedCode]], Optional[bool]]
ErrorSink = Callable[[RawAcquisition, InvalidFormatError], None]


class AcquisitionChannel:
    """One input channel. The coordinator activates at most one at a time."""

    mode: InputMode

    def __init__(self, logger_instance: Optional[logging.Logger] = None):
        self.logger = logger_instance if logger_instance else logger
        self.is_active = False

    def activate(self, on_code: CodeSink, on_error: ErrorSink) -> None:
        raise NotImplementedError

    def deactivate(self) -> None:
        raise NotImplementedError

    def resume(self, fresh: bool = False) -> None:
        """
        Re-arms input after a rejected code or a failed verification. With
        fresh=True the code last handed on may be read again at once.
        """
        pass


class OpticalChannel(AcquisitionChannel):
    """
    Camera-based acquisition: acquire the camera, attach it to the surface,
    then run the scan loop for the channel's symbology.
    """

    def __init__(self,
                 mode: InputMode,
                 scheduler: CallbackScheduler,
                 camera: CameraSessionManager,
                 decoder_factory: Callable[[], Any],
                 surface_provider: Optional[Callable[[], Optional[FrameSurface]]] = None,
                 facing: str = DEFAULT_FACING,
                 scan_interval_sec: float = DEFAULT_SCAN_INTERVAL_SEC,
                 logger_instance: Optional[logging.Logger] = None):
        super().__init__(logger_instance)
        if not mode.is_optical:
            raise ValueError(f"OpticalChannel cannot serve mode '{mode.value}'.")
        self.mode = mode
        self.scheduler = scheduler
        self.camera = camera
        self.decoder_factory = decoder_factory
        if surface_provider is None:
            default_surface = FrameSurface()
            surface_provider = lambda: default_surface
        self.surface_provider = surface_provider
        self.facing = facing
        self.scan_interval_sec = scan_interval_sec
        self.loop = None

    def activate(self, on_code: CodeSink, on_error: ErrorSink) -> None:
        """
        Raises:
            CameraPermissionError: The camera could not be acquired.
            ResourceRaceError: The surface never appeared or the stream died.
        """
        if self.is_active:
            return
        stream = self.camera.acquire(self.facing)
        try:
            surface = self.camera.attach(stream, self.surface_provider)
        except Exception:
            self.camera.release()
            raise

        def forward(acquisition: RawAcquisition) -> Optional[bool]:
            return on_code(acquisition, None)

        decoder = self.decoder_factory()
        if self.mode is InputMode.OPTICAL_QR:
            self.loop = StillFrameScanLoop(self.scheduler, surface, decoder, forward,
                                           interval_sec=self.scan_interval_sec)
        else:
            self.loop = StreamingScanLoop(self.scheduler, surface, decoder, forward)
        self.camera.add_release_listener(self._on_camera_released)
        self.is_active = True
        self.loop.start()
        self.logger.info(f"Optical channel '{self.mode.value}' active.")

    def _on_camera_released(self) -> None:
        loop, self.loop = self.loop, None
        if loop is not None:
            loop.stop()
        self.is_active = False
        self.camera.remove_release_listener(self._on_camera_released)

    def deactivate(self) -> None:
        # The camera is shared between the optical channels; only the active one releases it.
        if not self.is_active:
            return
        self.camera.release()
        # release() only notifies listeners when it held a stream.
        self._on_camera_released()
        self.logger.info(f"Optical channel '{self.mode.value}' released.")

    def resume(self, fresh: bool = False) -> None:
        if self.is_active and self.loop is not None:
            self.loop.resume(fresh=fresh)


class HidChannel(AcquisitionChannel):
    """Keyboard-wedge scanner acquisition through the KeystrokeAggregator."""

    mode = InputMode.HID

    def __init__(self, aggregator: KeystrokeAggregator, logger_instance: Optional[logging.Logger] = None):
        super().__init__(logger_instance)
        self.aggregator = aggregator

    def activate(self, on_code: CodeSink, on_error: ErrorSink) -> None:
        if self.is_active:
            return
        self.aggregator.on_code = on_code
        self.aggregator.on_error = on_error
        self.aggregator.attach()
        self.is_active = True

    def deactivate(self) -> None:
        if not self.is_active:
            return
        self.aggregator.detach()
        self.is_active = False
