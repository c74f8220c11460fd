"""
Mesh loading for the AR overlay.

Produces flat, interleaved position+normal vertex buffers with a single
diffuse colour, ready for upload with ``glDrawArrays(GL_TRIANGLES, ...)``.
Supports Wavefront OBJ files (with an optional MTL for the diffuse colour)
and a procedural cube.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import AssetLoadError

LOGGER = logging.getLogger(__name__)

FLOATS_PER_VERTEX = 6  # position (3) + normal (3)
DEFAULT_DIFFUSE = (0.8, 0.8, 0.8)


@dataclass(frozen=True)
class RenderableMesh:
    """Interleaved triangle list with one flat diffuse colour."""

    vertices: np.ndarray  # float32, [px, py, pz, nx, ny, nz] * vertex_count
    vertex_count: int
    diffuse_color: Tuple[float, float, float] = DEFAULT_DIFFUSE
    name: str = ""

    def validate(self):
        """Raise :class:`AssetLoadError` if the buffer cannot be drawn."""
        if self.vertices is None or self.vertices.ndim != 1:
            raise AssetLoadError(f"Mesh '{self.name}' must have a flat vertex buffer")
        if self.vertex_count <= 0:
            raise AssetLoadError(f"Mesh '{self.name}' has no vertices")
        if self.vertices.size != self.vertex_count * FLOATS_PER_VERTEX:
            raise AssetLoadError(
                f"Mesh '{self.name}' buffer holds {self.vertices.size} floats, "
                f"expected {self.vertex_count * FLOATS_PER_VERTEX}"
            )
        if self.vertex_count % 3 != 0:
            raise AssetLoadError(f"Mesh '{self.name}' vertex count is not a multiple of 3")
        if not np.all(np.isfinite(self.vertices)):
            raise AssetLoadError(f"Mesh '{self.name}' contains non-finite values")

    @property
    def positions(self) -> np.ndarray:
        return self.vertices.reshape(-1, FLOATS_PER_VERTEX)[:, :3]

    @property
    def normals(self) -> np.ndarray:
        return self.vertices.reshape(-1, FLOATS_PER_VERTEX)[:, 3:]

    def normalized(self, target_size: float = 1.0) -> "RenderableMesh":
        """Return a copy centred on its bounding box and scaled to ``target_size``."""
        positions = self.positions
        min_pos = positions.min(axis=0)
        max_pos = positions.max(axis=0)
        center = (min_pos + max_pos) * 0.5
        max_dimension = float(np.max(max_pos - min_pos))
        if max_dimension <= 0:
            return self

        scale = target_size / max_dimension
        data = self.vertices.reshape(-1, FLOATS_PER_VERTEX).copy()
        data[:, :3] = (data[:, :3] - center) * scale
        LOGGER.info("Mesh normalized: center=%s, scale=%.5f", np.round(center, 4), scale)
        return RenderableMesh(
            vertices=data.reshape(-1).astype(np.float32),
            vertex_count=self.vertex_count,
            diffuse_color=self.diffuse_color,
            name=self.name,
        )


def _face_normal(p0: np.ndarray, p1: np.ndarray, p2: np.ndarray) -> np.ndarray:
    normal = np.cross(p1 - p0, p2 - p0)
    length = np.linalg.norm(normal)
    if length == 0:
        return np.zeros(3, dtype=np.float64)
    return normal / length


def _resolve_index(token: str, count: int) -> int:
    # OBJ indices are 1-based; negative values count back from the end
    index = int(token)
    return index - 1 if index > 0 else count + index


def load_mtl_diffuse(filepath: str) -> Dict[str, Tuple[float, float, float]]:
    """Return ``{material_name: Kd}`` for every material in an MTL file."""
    materials: Dict[str, Tuple[float, float, float]] = {}
    current: Optional[str] = None

    with open(filepath, "r") as f:
        for line in f:
            parts = line.strip().split()
            if not parts or parts[0].startswith("#"):
                continue
            if parts[0] == "newmtl" and len(parts) > 1:
                current = parts[1]
            elif parts[0] == "Kd" and current is not None and len(parts) >= 4:
                materials[current] = (float(parts[1]), float(parts[2]), float(parts[3]))

    return materials


def load_obj(filepath: str, mtl_base_path: Optional[str] = None) -> RenderableMesh:
    """
    Load a triangle mesh from an OBJ file.

    Polygons are fan-triangulated. Vertex normals come from ``vn`` records
    when faces reference them, otherwise the face normal is used. The
    diffuse colour is the ``Kd`` of the first material in the referenced
    MTL file, falling back to a light grey.

    Args:
        filepath: Path to OBJ file
        mtl_base_path: Directory holding MTL files (defaults to the OBJ's)

    Returns:
        Loaded RenderableMesh

    Raises:
        AssetLoadError: If the file is missing, malformed or has no faces
    """
    path = Path(filepath)
    if not path.exists():
        raise AssetLoadError(f"Model file not found: {filepath}")

    base_dir = Path(mtl_base_path) if mtl_base_path else path.parent
    positions: List[List[float]] = []
    normals: List[List[float]] = []
    faces: List[List[Tuple[int, Optional[int]]]] = []
    mtl_files: List[str] = []
    first_material: Optional[str] = None

    try:
        with path.open("r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue

                parts = line.split()
                if parts[0] == 'v':
                    positions.append([float(parts[1]), float(parts[2]), float(parts[3])])

                elif parts[0] == 'vn':
                    normals.append([float(parts[1]), float(parts[2]), float(parts[3])])

                elif parts[0] == 'f':
                    # Face (can be "v", "v/vt", "v/vt/vn", "v//vn")
                    corners = []
                    for token in parts[1:]:
                        indices = token.split('/')
                        vi = _resolve_index(indices[0], len(positions))
                        ni = None
                        if len(indices) > 2 and indices[2]:
                            ni = _resolve_index(indices[2], len(normals))
                        corners.append((vi, ni))

                    # Triangulate if more than 3 vertices
                    for i in range(1, len(corners) - 1):
                        faces.append([corners[0], corners[i], corners[i + 1]])

                elif parts[0] == 'mtllib':
                    mtl_files.extend(parts[1:])

                elif parts[0] == 'usemtl' and first_material is None and len(parts) > 1:
                    first_material = parts[1]
    except (ValueError, IndexError, OSError) as e:
        raise AssetLoadError(f"Could not read OBJ file {filepath}: {e}") from e

    if not faces:
        raise AssetLoadError(f"OBJ file has no faces: {filepath}")

    position_arr = np.array(positions, dtype=np.float64)
    normal_arr = np.array(normals, dtype=np.float64) if normals else np.zeros((0, 3))

    data = np.zeros((len(faces) * 3, FLOATS_PER_VERTEX), dtype=np.float32)
    try:
        for f_idx, face in enumerate(faces):
            pts = [position_arr[vi] for vi, _ in face]
            flat_normal = None
            for c_idx, (vi, ni) in enumerate(face):
                row = f_idx * 3 + c_idx
                data[row, :3] = pts[c_idx]
                if ni is not None:
                    data[row, 3:] = normal_arr[ni]
                else:
                    if flat_normal is None:
                        flat_normal = _face_normal(*pts)
                    data[row, 3:] = flat_normal
    except IndexError as e:
        raise AssetLoadError(f"OBJ face references a missing vertex in {filepath}") from e

    diffuse = DEFAULT_DIFFUSE
    materials: Dict[str, Tuple[float, float, float]] = {}
    for mtl_name in mtl_files:
        mtl_path = base_dir / mtl_name
        if not mtl_path.exists():
            LOGGER.warning("Material library not found: %s", mtl_path)
            continue
        materials.update(load_mtl_diffuse(str(mtl_path)))

    if materials:
        key = first_material if first_material in materials else next(iter(materials))
        diffuse = materials[key]

    mesh = RenderableMesh(
        vertices=data.reshape(-1),
        vertex_count=len(faces) * 3,
        diffuse_color=tuple(float(c) for c in diffuse),
        name=os.path.basename(filepath),
    )
    LOGGER.info(
        "Model loaded: %s (%d vertices, diffuse=%s)", filepath, mesh.vertex_count, mesh.diffuse_color
    )
    return mesh


def create_cube(
    size: float = 1.0,
    color: Sequence[float] = (0.2, 0.6, 1.0),
) -> RenderableMesh:
    """Create a cube centred on the origin with per-face normals."""
    s = size / 2.0
    # (normal, four corners counter-clockwise seen from outside)
    faces = [
        ((0, 0, 1), [(-s, -s, s), (s, -s, s), (s, s, s), (-s, s, s)]),       # Front
        ((0, 0, -1), [(s, -s, -s), (-s, -s, -s), (-s, s, -s), (s, s, -s)]),  # Back
        ((-1, 0, 0), [(-s, -s, -s), (-s, -s, s), (-s, s, s), (-s, s, -s)]),  # Left
        ((1, 0, 0), [(s, -s, s), (s, -s, -s), (s, s, -s), (s, s, s)]),       # Right
        ((0, 1, 0), [(-s, s, s), (s, s, s), (s, s, -s), (-s, s, -s)]),       # Top
        ((0, -1, 0), [(-s, -s, -s), (s, -s, -s), (s, -s, s), (-s, -s, s)]),  # Bottom
    ]

    rows = []
    for normal, quad in faces:
        for idx in (0, 1, 2, 2, 3, 0):
            rows.append(list(quad[idx]) + list(normal))

    data = np.array(rows, dtype=np.float32)
    return RenderableMesh(
        vertices=data.reshape(-1),
        vertex_count=data.shape[0],
        diffuse_color=tuple(float(c) for c in color),
        name="cube",
    )
