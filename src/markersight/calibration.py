"""
Camera calibration: intrinsics container, calibration file I/O and the
interactive chessboard calibration session.

The calibration file is an OpenCV ``FileStorage`` document (YAML, XML or JSON
by extension) holding ``cameraMatrix`` (3x3) and ``distCoeffs``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .errors import CalibrationMissing, InvalidIntrinsics

LOGGER = logging.getLogger(__name__)

CAMERA_MATRIX_KEY = "cameraMatrix"
DIST_COEFFS_KEY = "distCoeffs"


@dataclass(frozen=True)
class CameraIntrinsics:
    """Container for camera calibration parameters."""

    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray

    @staticmethod
    def from_arrays(camera_matrix, dist_coeffs=None) -> "CameraIntrinsics":
        matrix = np.array(camera_matrix, dtype=np.float64).reshape(3, 3)
        if dist_coeffs is None:
            dist_coeffs = [0.0, 0.0, 0.0, 0.0, 0.0]
        coeffs = np.array(dist_coeffs, dtype=np.float64).reshape(-1, 1)
        return CameraIntrinsics(camera_matrix=matrix, dist_coeffs=coeffs)

    @staticmethod
    def from_focal(fx: float, fy: float, cx: float, cy: float) -> "CameraIntrinsics":
        return CameraIntrinsics.from_arrays([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])

    @property
    def fx(self) -> float:
        return float(self.camera_matrix[0, 0])

    @property
    def fy(self) -> float:
        return float(self.camera_matrix[1, 1])

    @property
    def cx(self) -> float:
        return float(self.camera_matrix[0, 2])

    @property
    def cy(self) -> float:
        return float(self.camera_matrix[1, 2])

    def validate(self):
        """Raise :class:`InvalidIntrinsics` for non-positive focal lengths."""
        if not (self.fx > 0 and self.fy > 0):
            raise InvalidIntrinsics(f"Focal lengths must be positive (fx={self.fx}, fy={self.fy})")


def load_calibration(path: str) -> CameraIntrinsics:
    """Load intrinsics from a calibration file.

    Raises:
        CalibrationMissing: If the file is absent, unreadable or lacks a key
    """
    if not Path(path).exists():
        raise CalibrationMissing(f"Calibration file not found: {path}", path)

    try:
        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    except cv2.error as e:
        raise CalibrationMissing(f"Calibration file unreadable: {path} ({e})", path) from e

    try:
        if not fs.isOpened():
            raise CalibrationMissing(f"Calibration file unreadable: {path}", path)
        camera_matrix = fs.getNode(CAMERA_MATRIX_KEY).mat()
        dist_coeffs = fs.getNode(DIST_COEFFS_KEY).mat()
    finally:
        fs.release()

    if camera_matrix is None or camera_matrix.size != 9:
        raise CalibrationMissing(f"'{CAMERA_MATRIX_KEY}' missing from {path}", path)
    if dist_coeffs is None or dist_coeffs.size == 0:
        raise CalibrationMissing(f"'{DIST_COEFFS_KEY}' missing from {path}", path)

    intrinsics = CameraIntrinsics.from_arrays(camera_matrix, dist_coeffs)
    intrinsics.validate()
    LOGGER.info("Calibration loaded from %s", path)
    return intrinsics


def save_calibration(intrinsics: CameraIntrinsics, path: str) -> bool:
    """Write intrinsics to a calibration file.

    Returns:
        bool: True if save successful, False otherwise
    """
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    if not fs.isOpened():
        LOGGER.error("Could not open calibration file for writing: %s", path)
        return False
    try:
        fs.write(CAMERA_MATRIX_KEY, np.asarray(intrinsics.camera_matrix, dtype=np.float64))
        fs.write(DIST_COEFFS_KEY, np.asarray(intrinsics.dist_coeffs, dtype=np.float64))
    finally:
        fs.release()
    LOGGER.info("Calibration saved to %s", path)
    return True


@dataclass
class CalibrationResult:
    """Output of a chessboard calibration run."""

    intrinsics: CameraIntrinsics
    image_size: Tuple[int, int]
    rms_error: float
    num_images: int


class ChessboardCalibrator:
    """
    Camera calibrator using chessboard pattern detection.

    The chessboard should have known dimensions, e.g. 9x6 internal corners
    (10x7 squares) with 25 mm squares.
    """

    def __init__(
        self,
        board_size: Tuple[int, int] = (9, 6),
        square_size: float = 0.025,
    ):
        """
        Args:
            board_size: (columns, rows) of internal chessboard corners
            square_size: Physical size of each square in meters
        """
        self.board_size = tuple(board_size)
        self.square_size = square_size

        # Object points template on the Z=0 plane
        self.objp = np.zeros((self.board_size[0] * self.board_size[1], 3), np.float32)
        self.objp[:, :2] = np.mgrid[0 : self.board_size[0], 0 : self.board_size[1]].T.reshape(-1, 2)
        self.objp *= square_size

        self.obj_points: List[np.ndarray] = []
        self.img_points: List[np.ndarray] = []
        self.image_size: Optional[Tuple[int, int]] = None

        self.criteria = (
            cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER,
            30,
            0.1,
        )

    def reset(self):
        self.obj_points.clear()
        self.img_points.clear()
        self.image_size = None

    @property
    def num_captures(self) -> int:
        return len(self.obj_points)

    def detect_chessboard(self, image: np.ndarray) -> Tuple[bool, Optional[np.ndarray]]:
        """Find and refine chessboard corners.

        Returns:
            (found, corners)
        """
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        flags = cv2.CALIB_CB_ADAPTIVE_THRESH + cv2.CALIB_CB_NORMALIZE_IMAGE
        found, corners = cv2.findChessboardCorners(gray, self.board_size, flags=flags)
        if not found:
            return False, None

        corners = cv2.cornerSubPix(gray, corners, (11, 11), (-1, -1), self.criteria)
        return True, corners

    def add_view(self, image: np.ndarray, corners: np.ndarray):
        """Record detected corners for one view."""
        if self.image_size is None:
            self.image_size = (image.shape[1], image.shape[0])
        self.obj_points.append(self.objp.copy())
        self.img_points.append(corners)
        LOGGER.info("View %d captured", self.num_captures)

    def calibrate(self, min_images: int = 10) -> Optional[CalibrationResult]:
        """Run ``cv2.calibrateCamera`` over the captured views."""
        if self.num_captures < min_images:
            LOGGER.warning("Not enough views for calibration: %d < %d", self.num_captures, min_images)
            return None

        LOGGER.info("Running calibration with %d views...", self.num_captures)
        try:
            rms, camera_matrix, dist_coeffs, _, _ = cv2.calibrateCamera(
                self.obj_points, self.img_points, self.image_size, None, None
            )
        except cv2.error as e:
            LOGGER.error("Calibration failed: %s", e)
            return None

        LOGGER.info("  RMS reprojection error: %.4f pixels", rms)
        LOGGER.info("  Focal length: fx=%.1f, fy=%.1f", camera_matrix[0, 0], camera_matrix[1, 1])
        LOGGER.info("  Principal point: cx=%.1f, cy=%.1f", camera_matrix[0, 2], camera_matrix[1, 2])
        return CalibrationResult(
            intrinsics=CameraIntrinsics.from_arrays(camera_matrix, dist_coeffs),
            image_size=self.image_size,
            rms_error=float(rms),
            num_images=self.num_captures,
        )


class InteractiveCalibrator:
    """Interactive calibration session in an OpenCV window.

    SPACE captures a view while the chessboard is visible; calibration runs
    automatically once ``required_views`` have been captured. ``q`` or ESC
    cancels.
    """

    def __init__(self, video, config: Optional[dict] = None):
        cfg = config or {}
        self.video = video
        self.calibrator = ChessboardCalibrator(
            board_size=tuple(cfg.get("board_size", (9, 6))),
            square_size=cfg.get("square_size", 0.025),
        )
        self.required_views = cfg.get("required_views", 20)
        self.max_missed_frames = cfg.get("max_missed_frames", 30)
        self.window_name = "MARKERSIGHT Camera Calibration"

    def run(self) -> Optional[CalibrationResult]:
        """Capture views until calibrated or cancelled."""
        LOGGER.info(
            "Starting calibration: show a %dx%d chessboard, press SPACE to capture (%d views)",
            self.calibrator.board_size[0],
            self.calibrator.board_size[1],
            self.required_views,
        )
        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)
        missed = 0
        try:
            while self.calibrator.num_captures < self.required_views:
                frame = self.video.capture_frame()
                found, corners = False, None
                if frame is None:
                    missed += 1
                    if missed >= self.max_missed_frames:
                        LOGGER.error("No frames from video source, calibration aborted")
                        return None
                else:
                    missed = 0
                    found, corners = self.calibrator.detect_chessboard(frame)
                    display = frame.copy()
                    if found:
                        cv2.drawChessboardCorners(display, self.calibrator.board_size, corners, found)
                    self._draw_status(display, found)
                    cv2.imshow(self.window_name, display)

                key = cv2.waitKey(20) & 0xFF
                if key in (ord("q"), 27):
                    LOGGER.warning("Calibration cancelled by user")
                    return None
                if key == ord(" ") and found:
                    self.calibrator.add_view(frame, corners)
        finally:
            cv2.destroyWindow(self.window_name)

        return self.calibrator.calibrate(min_images=self.required_views)

    def _draw_status(self, frame: np.ndarray, detected: bool):
        font = cv2.FONT_HERSHEY_SIMPLEX
        status_color = (0, 255, 0) if detected else (0, 0, 255)
        text = f"Views: {self.calibrator.num_captures}/{self.required_views}"
        cv2.putText(frame, text, (10, 30), font, 0.8, status_color, 2)
