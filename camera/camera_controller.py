# Directory: camera
# Filename: camera_controller.py
#!/usr/bin/env python3

import time
import logging # Standard library logging
import cv2
import sys # Import sys to check platform
import numpy as np # Import numpy for array operations
from typing import Callable, Dict, Optional, Tuple

from utils.checkin_errors import (
    CameraPermissionError,
    PermissionFailure,
    StreamReleasedError,
    SurfaceNotReadyError,
)

# Get the logger for this module. Its name will be 'camera.camera_controller'.
# Configuration (handlers, level, format) comes from the global setup.
logger = logging.getLogger(__name__)

DEFAULT_FACING = "environment"
FALLBACK_FACING = "user"
DEFAULT_FACING_CAMERA_IDS: Dict[str, int] = {"environment": 0, "user": 1}
DEFAULT_RESOLUTION = (1280, 720)
DEFAULT_ATTACH_RETRY_DELAYS_SEC = (0.1, 0.2)

# Substrings OpenCV/OS backends use when the camera is blocked by privacy settings.
_PERMISSION_MARKERS = ("permission", "not authorized", "not permitted", "denied")


def get_capture_backend():
    if sys.platform.startswith('win'):
        return cv2.CAP_DSHOW
    elif sys.platform.startswith('darwin'): # macOS
        return cv2.CAP_AVFOUNDATION
    return None # Let OpenCV choose default


class VideoStream:
    """A live capture acquired by the CameraSessionManager (one video track)."""

    def __init__(self, capture: "cv2.VideoCapture", facing: str, camera_id: int):
        self.capture = capture
        self.facing = facing
        self.camera_id = camera_id
        self._stopped = False

    @property
    def active(self) -> bool:
        return not self._stopped

    def read_frame(self) -> Optional[np.ndarray]:
        if self._stopped:
            raise StreamReleasedError(f"Stream for camera {self.camera_id} has already been released.")
        ret, frame = self.capture.read()
        if not ret:
            return None
        return frame

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.capture.release()


class FrameSurface:
    """
    An off-screen rendering surface bound to a live stream.

    It pulls frames from the bound stream on demand and reports the size of the
    last frame, (0, 0) until the first frame has arrived.
    """

    def __init__(self, name: str = "checkin-preview"):
        self.name = name
        self.stream: Optional[VideoStream] = None
        self._last_frame: Optional[np.ndarray] = None

    def bind(self, stream: VideoStream) -> None:
        self.stream = stream
        self._last_frame = None

    def unbind(self) -> None:
        self.stream = None
        self._last_frame = None

    @property
    def is_bound(self) -> bool:
        return self.stream is not None and self.stream.active

    def current_frame(self) -> Optional[np.ndarray]:
        if not self.is_bound:
            return None
        frame = self.stream.read_frame()
        if frame is not None:
            self._last_frame = frame
        return self._last_frame

    def frame_size(self) -> Tuple[int, int]:
        if self._last_frame is None:
            return 0, 0
        h, w = self._last_frame.shape[:2]
        return w, h


class CameraSessionManager:
    """
    Owns the camera permission lifecycle: acquire a capture, attach it to a
    rendering surface, and release it again on every exit path.
    """

    def __init__(self,
                 facing_camera_ids: Optional[Dict[str, int]] = None,
                 resolution: Tuple[int, int] = DEFAULT_RESOLUTION,
                 strict_resolution: bool = False,
                 attach_retry_delays_sec: Tuple[float, ...] = DEFAULT_ATTACH_RETRY_DELAYS_SEC,
                 fallback_facing: Optional[str] = FALLBACK_FACING,
                 sleep: Callable[[float], None] = time.sleep,
                 logger_instance: Optional[logging.Logger] = None):
        self.logger = logger_instance if logger_instance else logger
        self.facing_camera_ids = dict(facing_camera_ids or DEFAULT_FACING_CAMERA_IDS)
        self.resolution = resolution
        self.strict_resolution = strict_resolution
        self.attach_retry_delays_sec = tuple(attach_retry_delays_sec)
        self.fallback_facing = fallback_facing
        self.preferred_backend = get_capture_backend()
        self._sleep = sleep

        self.stream: Optional[VideoStream] = None
        self.surface: Optional[FrameSurface] = None
        self._release_listeners = []

    @property
    def has_active_stream(self) -> bool:
        return self.stream is not None and self.stream.active

    def add_release_listener(self, callback: Callable[[], None]) -> None:
        """Registers a callback run whenever the stream is released (scan loops tear down here)."""
        self._release_listeners.append(callback)

    def remove_release_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._release_listeners:
            self._release_listeners.remove(callback)

    def _open_capture(self, camera_id: int) -> "cv2.VideoCapture":
        if self.preferred_backend is not None:
            cap = cv2.VideoCapture(camera_id, self.preferred_backend)
            if cap.isOpened():
                return cap
            self.logger.warning(f"Preferred backend ({self.preferred_backend}) failed for camera ID {camera_id}. Trying default.")
            cap.release()
        return cv2.VideoCapture(camera_id)

    def _apply_resolution(self, cap: "cv2.VideoCapture", camera_id: int) -> None:
        width, height = self.resolution
        width_ok = cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        height_ok = cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        if width_ok and height_ok:
            self.logger.info(f"Camera {camera_id} resolution set to {width}x{height}.")
            return
        if self.strict_resolution:
            cap.release()
            raise CameraPermissionError(PermissionFailure.CONSTRAINT_UNSATISFIABLE,
                                        f"camera {camera_id} rejected {width}x{height}")
        self.logger.warning(f"Failed to set camera {camera_id} resolution to {width}x{height}; using the device default.")

    def _open_facing(self, facing: str) -> Optional[VideoStream]:
        camera_id = self.facing_camera_ids.get(facing)
        if camera_id is None:
            self.logger.warning(f"No camera configured for facing '{facing}'.")
            return None
        try:
            cap = self._open_capture(camera_id)
        except cv2.error as e:
            text = str(e).lower()
            if any(marker in text for marker in _PERMISSION_MARKERS):
                raise CameraPermissionError(PermissionFailure.PERMISSION_DENIED, str(e)) from e
            raise CameraPermissionError(PermissionFailure.UNKNOWN, str(e)) from e
        if not cap.isOpened():
            cap.release()
            return None
        self._apply_resolution(cap, camera_id)
        return VideoStream(cap, facing, camera_id)

    def acquire(self, facing: str = DEFAULT_FACING) -> VideoStream:
        """
        Requests camera access for the given facing.

        Any previously held stream is released first. If the preferred facing
        cannot be opened, the fallback facing (the front camera) is tried once.

        Returns:
            The live VideoStream.

        Raises:
            CameraPermissionError: Classified as PermissionDenied, NoDeviceFound,
                ConstraintUnsatisfiable or Unknown, with an operator hint.
        """
        self.release()
        self.logger.info(f"Requesting camera access (facing '{facing}')...")
        try:
            stream = self._open_facing(facing)
            if stream is None and self.fallback_facing and self.fallback_facing != facing:
                self.logger.info(f"Camera facing '{facing}' unavailable, trying '{self.fallback_facing}'...")
                stream = self._open_facing(self.fallback_facing)
        except CameraPermissionError as e:
            self.logger.error(f"Camera access failed: {e}")
            raise
        except Exception as e:
            self.logger.error(f"Unexpected camera access error: {e}", exc_info=True)
            raise CameraPermissionError(PermissionFailure.UNKNOWN, str(e)) from e

        if stream is None:
            error = CameraPermissionError(PermissionFailure.NO_DEVICE_FOUND, f"facing '{facing}'")
            self.logger.error(f"Camera access failed: {error}")
            raise error

        self.stream = stream
        self.logger.info(f"Camera access granted (camera ID {stream.camera_id}, facing '{stream.facing}').")
        return stream

    def attach(self, stream: VideoStream, surface_provider: Callable[[], Optional[FrameSurface]]) -> FrameSurface:
        """
        Binds the stream to a rendering surface.

        The surface may not exist yet when the session starts; the provider is
        polled again after each retry delay. If it never shows up the stream is
        released.

        Raises:
            StreamReleasedError: The stream was stopped before it could be attached.
            SurfaceNotReadyError: No surface appeared within the retry delays.
        """
        if not stream.active:
            raise StreamReleasedError("Cannot attach a stream that has already been released.")

        surface = surface_provider()
        for delay in self.attach_retry_delays_sec:
            if surface is not None:
                break
            self.logger.debug(f"Render surface not ready; retrying in {delay * 1000:.0f}ms.")
            self._sleep(delay)
            surface = surface_provider()

        if surface is None:
            self.logger.error("Render surface still not available after waiting. Releasing camera.")
            if stream is self.stream:
                self.release()
            else:
                stream.stop()
            raise SurfaceNotReadyError("Failed to initialize camera. Please try again.")

        if not stream.active:
            raise StreamReleasedError("Stream was released while waiting for the render surface.")

        surface.bind(stream)
        self.surface = surface
        self.logger.info(f"Camera {stream.camera_id} attached to surface '{surface.name}'.")
        return surface

    def release(self) -> None:
        """Stops the capture and clears the surface binding. Safe to call at any time."""
        stream, self.stream = self.stream, None
        surface, self.surface = self.surface, None

        if stream is None and surface is None:
            return

        for callback in list(self._release_listeners):
            try:
                callback()
            except Exception as e:
                self.logger.error(f"Error in camera release listener: {e}", exc_info=True)

        if surface is not None:
            surface.unbind()
        if stream is not None:
            stream.stop()
            self.logger.info(f"Camera {stream.camera_id} released.")
