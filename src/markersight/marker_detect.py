"""
Marker detection module.

Detects ArUco markers and solves the pose of the first one found.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)


@dataclass
class Pose:
    """Marker pose relative to the camera (OpenCV convention)."""

    rotation_vector: np.ndarray
    translation_vector: np.ndarray
    marker_id: int = -1

    def __post_init__(self):
        self.rotation_vector = np.asarray(self.rotation_vector, dtype=np.float64).reshape(3)
        self.translation_vector = np.asarray(self.translation_vector, dtype=np.float64).reshape(3)

    @property
    def is_in_front(self) -> bool:
        """True when the marker lies in front of the camera (Z forward)."""
        return bool(self.translation_vector[2] > 0)


@dataclass
class MarkerDetection:
    """Raw detector output for one frame."""

    ids: List[int] = field(default_factory=list)
    corners: List[np.ndarray] = field(default_factory=list)  # each (4, 2)

    @property
    def found(self) -> bool:
        return len(self.ids) > 0


class MarkerDetector:
    """Handles ArUco marker detection and single-marker pose solving."""

    def __init__(self, config: Optional[Dict] = None):
        cfg = config or {}
        self.dictionary_name = cfg.get("dictionary", "DICT_6X6_250")
        self.marker_length = float(cfg.get("marker_length", 0.05))
        self.dictionary = None
        self._detector = None
        self._parameters = None

        half = self.marker_length / 2.0
        # Corner order matches ArUco: top-left, top-right, bottom-right, bottom-left
        self.object_points = np.array([
            [-half, half, 0.0],
            [half, half, 0.0],
            [half, -half, 0.0],
            [-half, -half, 0.0],
        ], dtype=np.float32)

    def initialize(self) -> bool:
        """Set up the ArUco dictionary and detector parameters."""
        dict_id = getattr(cv2.aruco, self.dictionary_name, None)
        if dict_id is None:
            LOGGER.error("Unknown ArUco dictionary: %s", self.dictionary_name)
            return False

        self.dictionary = cv2.aruco.getPredefinedDictionary(dict_id)
        if hasattr(cv2.aruco, "ArucoDetector"):
            self._parameters = cv2.aruco.DetectorParameters()
            self._detector = cv2.aruco.ArucoDetector(self.dictionary, self._parameters)
        else:
            # OpenCV < 4.7 module-level API
            self._parameters = cv2.aruco.DetectorParameters_create()

        LOGGER.info(
            "Marker detector initialized: %s, marker length %.3f m",
            self.dictionary_name,
            self.marker_length,
        )
        return True

    def detect(self, frame: np.ndarray) -> MarkerDetection:
        """Detect markers in the given frame."""
        if self.dictionary is None:
            self.initialize()

        if self._detector is not None:
            corners, ids, _ = self._detector.detectMarkers(frame)
        else:
            corners, ids, _ = cv2.aruco.detectMarkers(frame, self.dictionary, parameters=self._parameters)

        if ids is None or len(ids) == 0:
            return MarkerDetection()

        return MarkerDetection(
            ids=[int(i) for i in np.asarray(ids).reshape(-1)],
            corners=[np.asarray(c, dtype=np.float32).reshape(4, 2) for c in corners],
        )

    def solve_pose(
        self,
        corners: np.ndarray,
        camera_matrix: np.ndarray,
        dist_coeffs: np.ndarray,
        marker_id: int = -1,
    ) -> Optional[Pose]:
        """Solve the marker pose from its four image corners."""
        image_points = np.asarray(corners, dtype=np.float32).reshape(4, 1, 2)
        try:
            ok, rvec, tvec = cv2.solvePnP(
                self.object_points,
                image_points,
                camera_matrix,
                dist_coeffs,
                flags=cv2.SOLVEPNP_IPPE_SQUARE,
            )
        except cv2.error as e:
            LOGGER.warning("solvePnP failed for marker %d: %s", marker_id, e)
            return None

        if not ok:
            return None
        return Pose(rotation_vector=rvec, translation_vector=tvec, marker_id=marker_id)

    def estimate(self, frame: np.ndarray, intrinsics) -> Tuple[Optional[Pose], MarkerDetection]:
        """Detect markers and return the pose of the first one.

        Only the first detected marker is used; additional markers are ignored.
        """
        detection = self.detect(frame)
        if not detection.found:
            return None, detection

        pose = self.solve_pose(
            detection.corners[0],
            intrinsics.camera_matrix,
            intrinsics.dist_coeffs,
            marker_id=detection.ids[0],
        )
        return pose, detection

    def draw_detection(self, frame: np.ndarray, detection: MarkerDetection, pose: Optional[Pose], intrinsics):
        """Draw marker outlines and the pose axes onto the frame in place."""
        if detection.found:
            corners = [c.reshape(1, 4, 2) for c in detection.corners]
            ids = np.array(detection.ids, dtype=np.int32).reshape(-1, 1)
            cv2.aruco.drawDetectedMarkers(frame, corners, ids)
        if pose is not None:
            cv2.drawFrameAxes(
                frame,
                intrinsics.camera_matrix,
                intrinsics.dist_coeffs,
                pose.rotation_vector,
                pose.translation_vector,
                self.marker_length * 0.7,
                3,
            )
