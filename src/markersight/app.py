"""
Application loop: capture, marker pose, gesture, render, present.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

import cv2
import glfw
import numpy as np

from .animation import AnimationTrigger
from .calibration import CameraIntrinsics, InteractiveCalibrator, load_calibration, save_calibration
from .errors import AssetLoadError, CalibrationMissing, InvalidIntrinsics
from .gesture import GestureDetector
from .marker_detect import MarkerDetector
from .mesh import RenderableMesh, create_cube, load_obj
from .renderer import RenderStateMachine
from .utils import DEFAULT_CONFIG, merge_config
from .video import VideoProcessor

LOGGER = logging.getLogger(__name__)


class ARApplication:
    """
    Frame-synchronous AR loop.

    Every collaborator can be injected; anything left out is built from the
    configuration. One iteration captures a frame, estimates the marker pose,
    checks the trigger gesture, renders and presents.
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        video=None,
        detector=None,
        gesture=None,
        renderer=None,
        animation: Optional[AnimationTrigger] = None,
        mesh: Optional[RenderableMesh] = None,
        calibrate: bool = False,
        calibration_loader: Callable[[str], CameraIntrinsics] = load_calibration,
        calibration_saver: Callable[[CameraIntrinsics, str], bool] = save_calibration,
        calibrator_factory=InteractiveCalibrator,
    ):
        self.config = merge_config(DEFAULT_CONFIG, config or {})

        anim_cfg = self.config['animation']
        self.animation = animation or AnimationTrigger(
            duration=anim_cfg['duration'],
            peak_height=anim_cfg['peak_height'],
            axis=anim_cfg['axis'],
        )
        self.video = video or VideoProcessor(self.config['camera'])
        self.detector = detector or MarkerDetector(self.config['marker'])
        if gesture is None and self.config['gesture'].get('enabled', True):
            gesture = GestureDetector(self.config['gesture'])
        self.gesture = gesture
        self.renderer = renderer or RenderStateMachine(self.config['render'], self.animation)

        self.mesh = mesh
        self.calibrate = calibrate
        self.calibration_loader = calibration_loader
        self.calibration_saver = calibration_saver
        self.calibrator_factory = calibrator_factory

        self.max_missed_frames = self.config['app']['max_missed_frames']
        self.draw_axes = self.config['marker'].get('draw_axes', False)
        self.intrinsics: Optional[CameraIntrinsics] = None
        self.frame_count = 0
        self.trigger_count = 0
        self._video_open = False

    # ------------------------------------------------------------------ #
    # Startup
    # ------------------------------------------------------------------ #
    def _open_video(self) -> bool:
        if not self._video_open:
            self._video_open = bool(self.video.initialize())
            if not self._video_open:
                LOGGER.error("Failed to open video source")
        return self._video_open

    def load_intrinsics(self) -> Optional[CameraIntrinsics]:
        """Load the calibration file, or calibrate interactively if it is missing."""
        path = self.config['calibration']['file']
        if not self.calibrate:
            try:
                return self.calibration_loader(path)
            except CalibrationMissing as e:
                LOGGER.warning("%s; starting interactive calibration", e)
            except InvalidIntrinsics as e:
                LOGGER.error("Invalid calibration in %s: %s", path, e)
                return None

        if not self._open_video():
            return None

        result = self.calibrator_factory(self.video, self.config['calibration']).run()
        if result is None:
            LOGGER.error("Calibration was not completed")
            return None

        try:
            result.intrinsics.validate()
        except InvalidIntrinsics as e:
            LOGGER.error("Calibration produced invalid intrinsics: %s", e)
            return None

        self.calibration_saver(result.intrinsics, path)
        return result.intrinsics

    def _first_frame(self) -> Optional[np.ndarray]:
        for _ in range(max(1, self.max_missed_frames)):
            frame = self.video.capture_frame()
            if frame is not None:
                return frame
        LOGGER.error("Video source did not deliver a frame")
        return None

    def load_model(self) -> bool:
        """Upload the configured model, or the procedural cube."""
        model_cfg = self.config['model']
        mesh = self.mesh
        if mesh is None and model_cfg.get('path'):
            try:
                mesh = load_obj(model_cfg['path'])
            except AssetLoadError as e:
                LOGGER.error("Model unavailable, continuing without object: %s", e)
                return False
            if model_cfg.get('normalize_size'):
                mesh = mesh.normalized(model_cfg['normalize_size'])
        elif mesh is None:
            mesh = create_cube(model_cfg['cube_size'], model_cfg['cube_color'])

        return self.renderer.load_asset(mesh)

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #
    def process_frame(self, frame: np.ndarray, intrinsics: CameraIntrinsics, now: Optional[float] = None) -> bool:
        """Run detection and rendering for one frame."""
        pose = None
        try:
            pose, detection = self.detector.estimate(frame, intrinsics)

            if pose is not None and self.gesture is not None and self.gesture.detect(frame):
                started = self.animation.start_time
                self.animation.trigger(now)
                if self.animation.start_time != started:
                    self.trigger_count += 1

            if self.draw_axes and detection is not None:
                self.detector.draw_detection(frame, detection, pose, intrinsics)
        except (cv2.error, ValueError) as e:
            LOGGER.warning("Frame analysis failed: %s", e)

        self.frame_count += 1
        return self.renderer.render_frame(frame, pose, intrinsics, now)

    def _loop(self, intrinsics: CameraIntrinsics, frame: Optional[np.ndarray]):
        missed = 0
        start = time.time()
        while not self.renderer.should_close():
            if frame is None:
                frame = self.video.capture_frame()
            if frame is None:
                missed += 1
                if missed >= self.max_missed_frames:
                    LOGGER.warning("No frames for %d iterations, stopping", missed)
                    break
                continue

            missed = 0
            self.process_frame(frame, intrinsics)
            self.renderer.present()
            frame = None

        elapsed = time.time() - start
        if elapsed > 0 and self.frame_count:
            LOGGER.info(
                "Processed %d frames in %.1fs (%.1f fps), %d animation triggers",
                self.frame_count,
                elapsed,
                self.frame_count / elapsed,
                self.trigger_count,
            )

    def run(self) -> int:
        """Run the application until the window closes.

        Returns:
            int: Process exit code (0 on normal exit)
        """
        try:
            intrinsics = self.load_intrinsics()
            if intrinsics is None:
                return 1
            self.intrinsics = intrinsics

            if not self._open_video():
                return 1
            if not self.detector.initialize():
                return 1

            frame = self._first_frame()
            if frame is None:
                return 1

            if not self.renderer.initialize((frame.shape[1], frame.shape[0])):
                LOGGER.error("Renderer failed to start: %s", getattr(self.renderer, 'init_error', None))
                return 1
            if hasattr(self.renderer, 'bind_key'):
                self.renderer.bind_key(glfw.KEY_SPACE, self.animation.trigger)

            self.load_model()
            self._loop(intrinsics, frame)
            return 0
        finally:
            self.renderer.shutdown()
            self.video.cleanup()
            self._video_open = False
