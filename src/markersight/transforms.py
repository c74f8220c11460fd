"""
Coordinate transforms between the OpenCV camera frame and OpenGL eye space.

OpenCV poses are expressed in a right-handed camera frame with X right, Y down
and Z forward. OpenGL expects eye space with X right, Y up and the camera
looking down -Z. All matrices here are 4x4 ``float32`` numpy arrays in
row-major order (``m[row, col]``); the renderer uploads them with
``transpose=GL_TRUE`` so GLSL sees the usual column-major layout.

Projection contract (OpenGL clip convention, NDC z in [-1, 1])::

    [ 2fx/w   0       1 - 2cx/w        0          ]
    [ 0       2fy/h   2cy/h - 1        0          ]
    [ 0       0      -(f+n)/(f-n)   -2fn/(f-n)    ]
    [ 0       0      -1                0          ]

A point imaged at pixel (u, v) lands on NDC (2u/w - 1, 1 - 2v/h); the near
plane maps to NDC z = -1 and the far plane to +1.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple

import numpy as np

from .errors import InvalidIntrinsics

# Flips Y and Z: OpenCV camera frame -> OpenGL eye space.
CV_TO_GL = np.diag([1.0, -1.0, -1.0, 1.0]).astype(np.float32)

_ANGLE_EPSILON = 1e-12


def _as_vector3(values, name: str) -> np.ndarray:
    vec = np.asarray(values, dtype=np.float64).reshape(-1)
    if vec.shape != (3,):
        raise ValueError(f"{name} must have 3 components, got shape {vec.shape}")
    if not np.all(np.isfinite(vec)):
        raise ValueError(f"{name} contains non-finite values: {vec}")
    return vec


def rodrigues(rotation_vector) -> np.ndarray:
    """Convert an axis-angle vector into a 3x3 rotation matrix.

    Uses the exponential map ``R = I cos(t) + (1 - cos(t)) k k^T + sin(t) [k]x``
    with ``t = |r|`` and ``k = r / t``. A zero vector yields the identity.
    """
    r = _as_vector3(rotation_vector, "rotation_vector")
    theta = float(np.linalg.norm(r))
    if theta < _ANGLE_EPSILON:
        return np.eye(3, dtype=np.float64)

    k = r / theta
    k_cross = np.array([
        [0.0, -k[2], k[1]],
        [k[2], 0.0, -k[0]],
        [-k[1], k[0], 0.0],
    ])
    cos_t = math.cos(theta)
    sin_t = math.sin(theta)
    return np.eye(3) * cos_t + (1.0 - cos_t) * np.outer(k, k) + sin_t * k_cross


def pose_matrix(rotation_vector, translation_vector) -> np.ndarray:
    """Build the marker-to-camera transform ``[R | t]`` in OpenCV convention."""
    t = _as_vector3(translation_vector, "translation_vector")
    matrix = np.eye(4, dtype=np.float64)
    matrix[:3, :3] = rodrigues(rotation_vector)
    matrix[:3, 3] = t
    return matrix


def view_matrix(rotation_vector, translation_vector) -> np.ndarray:
    """Return the OpenGL view matrix for a marker pose.

    The solver's pose already maps marker coordinates into the camera frame,
    so the view matrix (world -> eye, with the marker as world) is the pose
    followed by the Y/Z flip: ``V = CV_TO_GL @ [R | t]``.
    """
    return (CV_TO_GL.astype(np.float64) @ pose_matrix(rotation_vector, translation_vector)).astype(
        np.float32
    )


def camera_pose(rotation_vector, translation_vector) -> np.ndarray:
    """Return the OpenGL camera's transform expressed in marker space.

    This is the inverse of :func:`view_matrix`; its last column is the eye
    position in marker coordinates.
    """
    view = CV_TO_GL.astype(np.float64) @ pose_matrix(rotation_vector, translation_vector)
    rotation = view[:3, :3]
    inverse = np.eye(4, dtype=np.float64)
    inverse[:3, :3] = rotation.T
    inverse[:3, 3] = -rotation.T @ view[:3, 3]
    return inverse.astype(np.float32)


def validate_projection_inputs(
    fx: float, fy: float, width: int, height: int, near: float, far: float
):
    """Raise :class:`InvalidIntrinsics` when a projection would be degenerate."""
    if not (fx > 0 and fy > 0):
        raise InvalidIntrinsics(f"Focal lengths must be positive (fx={fx}, fy={fy})")
    if not (width > 0 and height > 0):
        raise InvalidIntrinsics(f"Viewport must be positive (w={width}, h={height})")
    if not (near > 0 and far > near):
        raise InvalidIntrinsics(f"Clip planes must satisfy 0 < near < far (near={near}, far={far})")


def projection_matrix(
    fx: float,
    fy: float,
    cx: float,
    cy: float,
    width: int,
    height: int,
    near: float = 0.1,
    far: float = 100.0,
) -> np.ndarray:
    """Build an OpenGL projection matrix from pinhole intrinsics.

    See the module docstring for the exact layout.
    """
    validate_projection_inputs(fx, fy, width, height, near, far)

    proj = np.zeros((4, 4), dtype=np.float64)
    proj[0, 0] = 2.0 * fx / width
    proj[1, 1] = 2.0 * fy / height
    proj[0, 2] = 1.0 - 2.0 * cx / width
    proj[1, 2] = 2.0 * cy / height - 1.0
    proj[2, 2] = -(far + near) / (far - near)
    proj[2, 3] = -2.0 * far * near / (far - near)
    proj[3, 2] = -1.0
    return proj.astype(np.float32)


def compute_matrices(
    rotation_vector,
    translation_vector,
    intrinsics,
    viewport: Tuple[int, int],
    near: float = 0.1,
    far: float = 100.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return ``(view, projection)`` for a pose and camera intrinsics.

    Args:
        rotation_vector: Axis-angle rotation from the pose solver
        translation_vector: Translation in meters from the pose solver
        intrinsics: Object exposing ``fx``, ``fy``, ``cx`` and ``cy``
        viewport: (width, height) in pixels
        near: Near clip distance in meters
        far: Far clip distance in meters
    """
    width, height = viewport
    projection = projection_matrix(
        intrinsics.fx, intrinsics.fy, intrinsics.cx, intrinsics.cy, width, height, near, far
    )
    return view_matrix(rotation_vector, translation_vector), projection


def translation_matrix(offset: Sequence[float]) -> np.ndarray:
    matrix = np.eye(4, dtype=np.float32)
    matrix[:3, 3] = np.asarray(offset, dtype=np.float32).reshape(3)
    return matrix


def scale_matrix(scale) -> np.ndarray:
    factors = np.broadcast_to(np.asarray(scale, dtype=np.float32), (3,))
    return np.diag([factors[0], factors[1], factors[2], 1.0]).astype(np.float32)


def rotation_matrix_xyz(angles_deg: Sequence[float]) -> np.ndarray:
    """Rotation about X, then Y, then Z (applied as ``Rx @ Ry @ Rz``)."""
    ax, ay, az = (math.radians(a) for a in angles_deg)

    rx = np.array([
        [1, 0, 0],
        [0, math.cos(ax), -math.sin(ax)],
        [0, math.sin(ax), math.cos(ax)],
    ])
    ry = np.array([
        [math.cos(ay), 0, math.sin(ay)],
        [0, 1, 0],
        [-math.sin(ay), 0, math.cos(ay)],
    ])
    rz = np.array([
        [math.cos(az), -math.sin(az), 0],
        [math.sin(az), math.cos(az), 0],
        [0, 0, 1],
    ])

    matrix = np.eye(4, dtype=np.float32)
    matrix[:3, :3] = rx @ ry @ rz
    return matrix


def model_matrix(
    scale=1.0,
    base_rotation_deg: Sequence[float] = (0.0, 0.0, 0.0),
    offset: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """Place an asset on the marker: ``T(offset) @ R(base) @ S(scale)``.

    ``offset`` is in marker space (meters), so animation moves the object
    relative to the marker regardless of the asset's authored orientation.
    """
    matrix = rotation_matrix_xyz(base_rotation_deg) @ scale_matrix(scale)
    if offset is not None:
        matrix = translation_matrix(offset) @ matrix
    return matrix.astype(np.float32)
