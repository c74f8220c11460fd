"""
MARKERSIGHT - Marker-based Augmented Reality for the classroom.

This package provides functionality for:
- Camera calibration and video capture
- ArUco marker pose estimation
- OpenCV to OpenGL coordinate conversion
- Phong-lit OpenGL overlay rendering
- Gesture-triggered object animation
"""

from .animation import AnimationTrigger
from .app import ARApplication
from .calibration import (
    CalibrationResult,
    CameraIntrinsics,
    ChessboardCalibrator,
    InteractiveCalibrator,
    load_calibration,
    save_calibration,
)
from .errors import (
    AssetLoadError,
    CalibrationMissing,
    FrameSizeMismatch,
    InvalidIntrinsics,
    MarkerSightError,
    ShaderCompileError,
    ShaderError,
    ShaderLinkError,
)
from .gesture import GestureDetector, GestureType
from .marker_detect import MarkerDetection, MarkerDetector, Pose
from .mesh import RenderableMesh, create_cube, load_obj
from .renderer import ObjectDraw, RenderSettings, RenderStateMachine
from .video import VideoProcessor

__version__ = "0.1.0"

__all__ = [
    # Application
    "ARApplication",
    "VideoProcessor",
    # Calibration
    "CameraIntrinsics",
    "CalibrationResult",
    "ChessboardCalibrator",
    "InteractiveCalibrator",
    "load_calibration",
    "save_calibration",
    # Detection
    "MarkerDetector",
    "MarkerDetection",
    "Pose",
    "GestureDetector",
    "GestureType",
    # Rendering
    "RenderStateMachine",
    "RenderSettings",
    "ObjectDraw",
    "RenderableMesh",
    "create_cube",
    "load_obj",
    "AnimationTrigger",
    # Errors
    "MarkerSightError",
    "InvalidIntrinsics",
    "ShaderError",
    "ShaderCompileError",
    "ShaderLinkError",
    "FrameSizeMismatch",
    "AssetLoadError",
    "CalibrationMissing",
]
