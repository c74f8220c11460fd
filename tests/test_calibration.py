"""
Tests for camera intrinsics, calibration file I/O and chessboard calibration.
"""

import os
import sys
import tempfile
import unittest
from unittest import mock

import cv2
import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from markersight import calibration as calibration_module  # type: ignore
from markersight.calibration import (  # type: ignore
    CameraIntrinsics,
    ChessboardCalibrator,
    InteractiveCalibrator,
    load_calibration,
    save_calibration,
)
from markersight.errors import CalibrationMissing, InvalidIntrinsics  # type: ignore


def _chessboard_image(board_size=(9, 6), square_px=40, image_size=(640, 480)):
    """White image with a (columns+1) x (rows+1) square chessboard in the middle."""
    cols, rows = board_size[0] + 1, board_size[1] + 1
    width, height = image_size
    image = np.full((height, width), 255, dtype=np.uint8)
    x0 = (width - cols * square_px) // 2
    y0 = (height - rows * square_px) // 2
    for r in range(rows):
        for c in range(cols):
            if (r + c) % 2 == 0:
                y, x = y0 + r * square_px, x0 + c * square_px
                image[y:y + square_px, x:x + square_px] = 0
    return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)


class TestCameraIntrinsics(unittest.TestCase):
    """Intrinsics container."""

    def test_from_focal(self):
        intrinsics = CameraIntrinsics.from_focal(500.0, 510.0, 320.0, 240.0)
        self.assertEqual((intrinsics.fx, intrinsics.fy, intrinsics.cx, intrinsics.cy), (500.0, 510.0, 320.0, 240.0))
        self.assertEqual(intrinsics.dist_coeffs.shape, (5, 1))
        intrinsics.validate()

    def test_invalid_focal_length(self):
        with self.assertRaises(InvalidIntrinsics):
            CameraIntrinsics.from_focal(0.0, 500.0, 320.0, 240.0).validate()


class TestCalibrationFile(unittest.TestCase):
    """FileStorage round trip and missing data."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.path = os.path.join(self.tmpdir.name, "calibration_data.yml")

    def test_save_and_load(self):
        intrinsics = CameraIntrinsics.from_arrays(
            [[612.5, 0.0, 318.2], [0.0, 611.9, 243.7], [0.0, 0.0, 1.0]],
            [0.1, -0.05, 0.001, 0.002, 0.0],
        )
        self.assertTrue(save_calibration(intrinsics, self.path))

        loaded = load_calibration(self.path)
        np.testing.assert_allclose(loaded.camera_matrix, intrinsics.camera_matrix)
        np.testing.assert_allclose(loaded.dist_coeffs.reshape(-1), intrinsics.dist_coeffs.reshape(-1))

    def test_missing_file(self):
        with self.assertRaises(CalibrationMissing) as ctx:
            load_calibration(os.path.join(self.tmpdir.name, "absent.yml"))
        self.assertTrue(ctx.exception.path.endswith("absent.yml"))

    def test_missing_distortion_key(self):
        fs = cv2.FileStorage(self.path, cv2.FILE_STORAGE_WRITE)
        fs.write("cameraMatrix", np.eye(3) * 500.0)
        fs.release()

        with self.assertRaises(CalibrationMissing):
            load_calibration(self.path)

    def test_invalid_camera_matrix(self):
        save_calibration(CameraIntrinsics.from_focal(-1.0, 500.0, 320.0, 240.0), self.path)
        with self.assertRaises(InvalidIntrinsics):
            load_calibration(self.path)


class TestChessboardCalibrator(unittest.TestCase):
    """Corner detection and calibration from synthetic views."""

    def test_detects_synthetic_chessboard(self):
        calibrator = ChessboardCalibrator(board_size=(9, 6))
        found, corners = calibrator.detect_chessboard(_chessboard_image())
        self.assertTrue(found)
        self.assertEqual(corners.shape, (54, 1, 2))

    def test_blank_image_has_no_board(self):
        calibrator = ChessboardCalibrator()
        found, corners = calibrator.detect_chessboard(np.full((480, 640, 3), 255, np.uint8))
        self.assertFalse(found)
        self.assertIsNone(corners)

    def test_requires_minimum_views(self):
        calibrator = ChessboardCalibrator()
        self.assertIsNone(calibrator.calibrate(min_images=10))

    def test_recovers_intrinsics_from_projected_views(self):
        calibrator = ChessboardCalibrator(board_size=(9, 6), square_size=0.025)
        camera_matrix = np.array([[520.0, 0.0, 320.0], [0.0, 520.0, 240.0], [0.0, 0.0, 1.0]])
        image = np.zeros((480, 640, 3), dtype=np.uint8)

        rng = np.random.default_rng(3)
        for _ in range(12):
            rvec = rng.uniform(-0.35, 0.35, size=3)
            tvec = np.array([-0.1, -0.0625, 0.6]) + rng.uniform(-0.03, 0.03, size=3)
            corners, _ = cv2.projectPoints(calibrator.objp, rvec, tvec, camera_matrix, np.zeros(5))
            calibrator.add_view(image, corners.astype(np.float32))

        result = calibrator.calibrate(min_images=10)
        self.assertIsNotNone(result)
        self.assertEqual(result.num_images, 12)
        self.assertEqual(result.image_size, (640, 480))
        self.assertLess(result.rms_error, 0.01)
        self.assertAlmostEqual(result.intrinsics.fx, 520.0, delta=2.0)
        self.assertAlmostEqual(result.intrinsics.cy, 240.0, delta=2.0)

        calibrator.reset()
        self.assertEqual(calibrator.num_captures, 0)


class FrameSource:
    """Video stand-in that serves queued frames, then nothing."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.captures = 0

    def capture_frame(self):
        self.captures += 1
        return self.frames.pop(0) if self.frames else None


class TestInteractiveCalibrator(unittest.TestCase):
    """Window loop with the HighGUI calls patched out."""

    def setUp(self):
        self.keys = []
        self.key_polls = 0
        for name in ("namedWindow", "imshow", "destroyWindow"):
            patcher = mock.patch.object(calibration_module.cv2, name)
            patcher.start()
            self.addCleanup(patcher.stop)
        patcher = mock.patch.object(calibration_module.cv2, "waitKey", side_effect=self._wait_key)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _wait_key(self, delay):
        self.key_polls += 1
        return self.keys.pop(0) if self.keys else -1

    def test_gives_up_when_source_stops_delivering(self):
        video = FrameSource()
        calibrator = InteractiveCalibrator(video, {"max_missed_frames": 5})

        self.assertIsNone(calibrator.run())
        self.assertEqual(video.captures, 5)
        self.assertEqual(self.key_polls, 4)
        calibration_module.cv2.destroyWindow.assert_called_once_with(calibrator.window_name)

    def test_cancel_honoured_without_frames(self):
        self.keys = [ord("q")]
        video = FrameSource()
        calibrator = InteractiveCalibrator(video, {"max_missed_frames": 1000})

        self.assertIsNone(calibrator.run())
        self.assertEqual(video.captures, 1)

    def test_miss_counter_resets_on_frame(self):
        blank = np.full((480, 640, 3), 255, np.uint8)
        video = FrameSource([None, None, blank, None, None])
        calibrator = InteractiveCalibrator(video, {"max_missed_frames": 3})

        self.assertIsNone(calibrator.run())
        self.assertEqual(video.captures, 6)

    def test_space_captures_views_until_calibrated(self):
        board = _chessboard_image()
        self.keys = [ord(" ")] * 3
        video = FrameSource([board] * 3)
        calibrator = InteractiveCalibrator(video, {"required_views": 3})

        with mock.patch.object(calibrator.calibrator, "calibrate", return_value="result") as calibrate:
            self.assertEqual(calibrator.run(), "result")
        calibrate.assert_called_once_with(min_images=3)
        self.assertEqual(calibrator.calibrator.num_captures, 3)


if __name__ == "__main__":
    unittest.main()
