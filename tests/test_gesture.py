"""
Tests for skin-colour gesture classification on synthetic hands.
"""

import math
import os
import sys
import unittest

import cv2
import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from markersight.gesture import GestureDetector, GestureType  # type: ignore


def _skin_bgr():
    hsv = np.uint8([[[10, 150, 200]]])
    return tuple(int(c) for c in cv2.cvtColor(hsv, cv2.COLOR_HSV2BGR)[0, 0])


def _fist(radius=80):
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    cv2.circle(frame, (320, 260), radius, _skin_bgr(), -1)
    return frame


def _open_hand():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    color = _skin_bgr()
    center = (320, 330)
    cv2.circle(frame, center, 60, color, -1)
    for angle in (-70, -35, 0, 35, 70):
        rad = math.radians(angle)
        tip = (int(center[0] + 190 * math.sin(rad)), int(center[1] - 190 * math.cos(rad)))
        cv2.line(frame, center, tip, color, 22)
    return frame


class TestGestureDetector(unittest.TestCase):
    """Fist vs open hand classification."""

    def setUp(self):
        self.detector = GestureDetector()

    def test_skin_mask_selects_hand(self):
        mask = self.detector.skin_mask(_fist())
        self.assertEqual(mask[260, 320], 255)
        self.assertEqual(mask[10, 10], 0)

    def test_fist_is_closed(self):
        self.assertEqual(self.detector.classify(_fist()), GestureType.HAND_CLOSED)
        self.assertTrue(self.detector.detect(_fist()))

    def test_spread_fingers_are_open(self):
        self.assertEqual(self.detector.classify(_open_hand()), GestureType.HAND_OPEN)
        self.assertFalse(self.detector.detect(_open_hand()))

    def test_open_policy(self):
        detector = GestureDetector({"policy": "open"})
        self.assertTrue(detector.detect(_open_hand()))
        self.assertFalse(detector.detect(_fist()))

    def test_small_blob_is_ignored(self):
        self.assertEqual(self.detector.classify(_fist(radius=30)), GestureType.NONE)

    def test_empty_frames(self):
        self.assertEqual(self.detector.classify(np.zeros((480, 640, 3), np.uint8)), GestureType.NONE)
        self.assertEqual(self.detector.classify(None), GestureType.NONE)
        self.assertEqual(self.detector.last_gesture, GestureType.NONE)


if __name__ == "__main__":
    unittest.main()
