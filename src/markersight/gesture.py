"""
Skin-colour hand gesture detection.

Segments skin in HSV, takes the largest blob and counts deep convexity
defects (gaps between fingers) to tell a closed fist from an open hand.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

LOGGER = logging.getLogger(__name__)


class GestureType(Enum):
    NONE = "none"
    HAND_OPEN = "open"
    HAND_CLOSED = "closed"
    POINTING = "pointing"


class GestureDetector:
    """Classifies the dominant hand shape in a BGR frame."""

    def __init__(self, config: Optional[Dict] = None):
        cfg = config or {}
        self.lower_skin = np.array(cfg.get("lower_hsv", (0, 48, 80)), dtype=np.uint8)
        self.upper_skin = np.array(cfg.get("upper_hsv", (20, 255, 255)), dtype=np.uint8)
        self.min_area = cfg.get("min_area", 8000)
        self.defect_depth = cfg.get("defect_depth", 20.0)  # pixels
        self.kernel_size = cfg.get("kernel_size", 7)
        self.policy = GestureType(cfg.get("policy", GestureType.HAND_CLOSED.value))
        self.last_gesture = GestureType.NONE

        self._kernel = cv2.getStructuringElement(
            cv2.MORPH_ELLIPSE, (self.kernel_size, self.kernel_size)
        )

    def skin_mask(self, frame: np.ndarray) -> np.ndarray:
        hsv = cv2.cvtColor(frame, cv2.COLOR_BGR2HSV)
        mask = cv2.inRange(hsv, self.lower_skin, self.upper_skin)
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, self._kernel)
        return cv2.morphologyEx(mask, cv2.MORPH_CLOSE, self._kernel)

    def _largest_contour(self, mask: np.ndarray) -> Tuple[Optional[np.ndarray], float]:
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        best, best_area = None, 0.0
        for contour in contours:
            area = cv2.contourArea(contour)
            if area > best_area:
                best, best_area = contour, area
        return best, best_area

    def count_deep_defects(self, contour: np.ndarray) -> Optional[int]:
        """Number of convexity defects deeper than ``defect_depth``.

        Returns None when the hull is too small to analyse.
        """
        hull = cv2.convexHull(contour, returnPoints=False)
        if hull is None or len(hull) <= 3:
            return None

        try:
            defects = cv2.convexityDefects(contour, hull)
        except cv2.error as e:
            # Self-intersecting contours produce non-monotonous hulls
            LOGGER.debug("Convexity defects failed: %s", e)
            return None

        if defects is None:
            return 0
        depths = defects[:, 0, 3] / 256.0
        return int(np.count_nonzero(depths > self.defect_depth))

    def classify(self, frame: np.ndarray) -> GestureType:
        """Return the hand shape seen in the frame."""
        if frame is None or frame.size == 0:
            return GestureType.NONE

        contour, area = self._largest_contour(self.skin_mask(frame))
        if contour is None or area <= self.min_area:
            gesture = GestureType.NONE
        else:
            defects = self.count_deep_defects(contour)
            if defects is None:
                gesture = GestureType.NONE
            elif defects <= 1:
                gesture = GestureType.HAND_CLOSED
            elif defects >= 4:
                gesture = GestureType.HAND_OPEN
            elif defects == 2:
                gesture = GestureType.POINTING
            else:
                gesture = GestureType.NONE

        if gesture != self.last_gesture:
            LOGGER.debug("Gesture changed: %s -> %s", self.last_gesture.value, gesture.value)
        self.last_gesture = gesture
        return gesture

    def detect(self, frame: np.ndarray) -> bool:
        """True when the configured trigger gesture is visible."""
        return self.classify(frame) == self.policy
