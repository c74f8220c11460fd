"""
Error types raised across the MARKERSIGHT pipeline.
"""

from __future__ import annotations

from typing import Optional, Tuple


class MarkerSightError(Exception):
    """Base class for all MARKERSIGHT errors."""


class InvalidIntrinsics(MarkerSightError, ValueError):
    """Focal length, viewport or clip planes cannot produce a valid projection."""


class ShaderError(MarkerSightError):
    """A GL program could not be built.

    The driver-provided info log is kept in ``log``.
    """

    def __init__(self, message: str, log: str = ""):
        super().__init__(f"{message}: {log}" if log else message)
        self.log = log


class ShaderCompileError(ShaderError):
    """A vertex or fragment shader failed to compile."""


class ShaderLinkError(ShaderError):
    """Compiled shaders failed to link into a program."""


class FrameSizeMismatch(MarkerSightError):
    """Incoming video frame does not match the background texture size."""

    def __init__(self, expected: Tuple[int, int], actual: Tuple[int, int]):
        super().__init__(
            f"Frame size {actual[0]}x{actual[1]} does not match texture size "
            f"{expected[0]}x{expected[1]}"
        )
        self.expected = expected
        self.actual = actual


class AssetLoadError(MarkerSightError):
    """A model or material could not be loaded or uploaded."""


class CalibrationMissing(MarkerSightError):
    """No usable calibration; the caller should run interactive calibration."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
