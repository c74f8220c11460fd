"""
Video input for the AR loop: a live camera or a recorded clip.
"""

import logging
import platform
from typing import List, Optional

import cv2
import numpy as np

# Capture APIs to try, best first, before falling back to CAP_ANY
PLATFORM_BACKENDS = {
    'Darwin': ('CAP_AVFOUNDATION',),
    'Windows': ('CAP_DSHOW', 'CAP_MSMF'),
    'Linux': ('CAP_V4L2', 'CAP_GSTREAMER'),
}


def default_backends(system: Optional[str] = None) -> List[int]:
    """Capture API ids for ``system`` (defaults to the running platform)."""
    names = PLATFORM_BACKENDS.get(system or platform.system(), PLATFORM_BACKENDS['Linux'])
    backends = [getattr(cv2, name) for name in names if hasattr(cv2, name)]
    backends.append(cv2.CAP_ANY)
    return backends


class VideoProcessor:
    """Opens the configured frame source and hands out BGR frames."""

    def __init__(self, config=None):
        """
        Args:
            config: ``camera`` section of the configuration dictionary
        """
        self.config = config or {}
        self.cap: Optional[cv2.VideoCapture] = None
        self.logger = logging.getLogger(__name__)

        self.camera_id = self.config.get('camera_id', 0)
        self.video_file = self.config.get('video_file')
        self.width = self.config.get('width', 640)
        self.height = self.config.get('height', 480)
        self.fps = self.config.get('fps', 30)
        self.backend_priority = list(self.config.get('backend_priority') or default_backends())
        self.warmup_frames = self.config.get('init_attempts', 10)
        self.selected_backend: Optional[int] = None

    def initialize(self):
        """Open the video file if one is configured, otherwise the camera.

        Returns:
            bool: True once a source delivers frames
        """
        self.cleanup()
        if self.video_file:
            return self._open_file(self.video_file)

        for backend in self.backend_priority:
            cap = self._open_camera(backend)
            if cap is not None:
                self.cap = cap
                self.selected_backend = backend
                return True

        self.logger.error("No capture backend could open camera %s", self.camera_id)
        return False

    def _open_file(self, path) -> bool:
        cap = cv2.VideoCapture(path)
        if not cap.isOpened():
            self.logger.error(f"Failed to open video file: {path}")
            cap.release()
            return False
        self.cap = cap
        self.logger.info(f"Playing video file: {path}")
        return True

    def _open_camera(self, backend: int) -> Optional[cv2.VideoCapture]:
        name = cv2.videoio_registry.getBackendName(backend)
        cap = cv2.VideoCapture(self.camera_id, backend)
        if not cap.isOpened():
            self.logger.warning("Camera %s did not open with %s", self.camera_id, name)
            cap.release()
            return None

        for prop, value in (
            (cv2.CAP_PROP_FRAME_WIDTH, self.width),
            (cv2.CAP_PROP_FRAME_HEIGHT, self.height),
            (cv2.CAP_PROP_FPS, self.fps),
        ):
            cap.set(prop, value)

        if not self._delivers_frames(cap):
            self.logger.warning("Camera %s opened with %s but gave no usable frame", self.camera_id, name)
            cap.release()
            return None

        self.logger.info(
            "Camera %s ready via %s at %dx%d",
            self.camera_id,
            name,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        return cap

    def _delivers_frames(self, cap: cv2.VideoCapture) -> bool:
        # Some drivers return all-black frames while the sensor starts up
        for _ in range(self.warmup_frames):
            ok, frame = cap.read()
            if ok and frame is not None and frame.size and np.any(frame):
                return True
        return False

    def capture_frame(self):
        """Read the next frame.

        Returns:
            np.ndarray or None: BGR frame, or None when the source is closed or exhausted
        """
        if self.cap is None:
            return None

        ok, frame = self.cap.read()
        if not ok or frame is None:
            self.logger.warning("Failed to capture frame")
            return None
        return frame

    def cleanup(self):
        """Release the capture device."""
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            self.selected_backend = None
            self.logger.info("Video source released")
