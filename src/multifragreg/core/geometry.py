from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def as_vec3(v: np.ndarray | tuple[float, float, float] | list[float]) -> np.ndarray:
    v = np.asarray(v, dtype=np.float64).reshape(-1)
    if v.size != 3:
        raise ValueError("expected a 3-vector")
    return v.copy()


def rotation_matrix(rotation_deg: np.ndarray) -> np.ndarray:
    """
    Rotation matrix from Euler angles in degrees (extrinsic x, then y, then z).
    """
    from scipy.spatial.transform import Rotation as R  # type: ignore

    return R.from_euler("xyz", as_vec3(rotation_deg), degrees=True).as_matrix()


def pose_matrix(rotation_deg: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """4x4 homogeneous transform X_scene = R X_model + t."""
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = rotation_matrix(rotation_deg)
    T[:3, 3] = as_vec3(translation)
    return T


def transform_vertices(vertices: np.ndarray, rotation_deg: np.ndarray, translation: np.ndarray) -> np.ndarray:
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    return vertices @ rotation_matrix(rotation_deg).T + as_vec3(translation).reshape(1, 3)


@dataclass(frozen=True)
class Perspective:
    """
    Projection "pyramid" of one radiograph.

    `P` maps homogeneous scene points to homogeneous pixel coordinates of an image of
    `width_px` x `height_px` (origin top-left, v down).
    """

    P: np.ndarray  # (3,4)
    width_px: int
    height_px: int

    @classmethod
    def from_values(cls, values: np.ndarray, width_px: int, height_px: int) -> "Perspective":
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if values.size != 12:
            raise ValueError(f"perspective needs 12 values (3x4 matrix), got {values.size}")
        if width_px <= 0 or height_px <= 0:
            raise ValueError("perspective image size must be > 0")
        return cls(P=values.reshape(3, 4), width_px=int(width_px), height_px=int(height_px))

    def with_size(self, width_px: int, height_px: int) -> "Perspective":
        """Same pyramid seen by an image resampled to another size."""
        sx = float(width_px) / float(self.width_px)
        sy = float(height_px) / float(self.height_px)
        S = np.diag([sx, sy, 1.0])
        return Perspective(P=S @ self.P, width_px=int(width_px), height_px=int(height_px))


@dataclass(frozen=True)
class CropWindow:
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def full(cls, width_px: int, height_px: int) -> "CropWindow":
        return cls(0, 0, int(width_px), int(height_px))

    def slices(self) -> tuple[slice, slice]:
        return slice(self.y, self.y + self.height), slice(self.x, self.x + self.width)


FULL_NDC_CROP = (-1.0, -1.0, 2.0, 2.0)


def project_points(perspective: Perspective, XYZ: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Project scene points. Returns (uv_px (N,2), depth (N,)); uv is NaN behind the source.
    """
    XYZ = np.asarray(XYZ, dtype=np.float64).reshape(-1, 3)
    Xh = np.concatenate([XYZ, np.ones((XYZ.shape[0], 1), dtype=np.float64)], axis=1)
    uvw = Xh @ perspective.P.T
    w = uvw[:, 2]
    uv = np.full((XYZ.shape[0], 2), np.nan, dtype=np.float64)
    good = np.isfinite(w) & (w > 1e-12)
    uv[good] = uvw[good, :2] / w[good, None]
    return uv, w


def pixel_to_ndc(perspective: Perspective, uv_px: np.ndarray) -> np.ndarray:
    """Pixel coordinates -> normalised device coordinates in [-1,1], y up."""
    uv_px = np.asarray(uv_px, dtype=np.float64).reshape(-1, 2)
    x = 2.0 * uv_px[:, 0] / float(perspective.width_px) - 1.0
    y = 1.0 - 2.0 * uv_px[:, 1] / float(perspective.height_px)
    return np.stack([x, y], axis=-1)


def ndc_crop_mask(
    xy_ndc: np.ndarray,
    crop_ndc: tuple[float, float, float, float] = FULL_NDC_CROP,
    angle_deg: float = 0.0,
) -> np.ndarray:
    """
    Points inside the crop rectangle (x, y, w, h) after rotating them by `angle_deg`
    about the image centre. NaN points are never inside.
    """
    xy_ndc = np.asarray(xy_ndc, dtype=np.float64).reshape(-1, 2)
    a = np.deg2rad(float(angle_deg))
    c, s = np.cos(a), np.sin(a)
    x = c * xy_ndc[:, 0] - s * xy_ndc[:, 1]
    y = s * xy_ndc[:, 0] + c * xy_ndc[:, 1]
    cx, cy, cw, ch = (float(v) for v in crop_ndc)
    inside = (x >= cx) & (x <= cx + cw) & (y >= cy) & (y <= cy + ch)
    return inside & np.isfinite(x) & np.isfinite(y)


def bounding_box(vertices: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Axis-aligned extrema (min_xyz, max_xyz)."""
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    if vertices.shape[0] == 0:
        raise ValueError("no vertices")
    return vertices.min(axis=0), vertices.max(axis=0)


def half_space_mask(vertices: np.ndarray, normal: np.ndarray, d: float, sign: float) -> np.ndarray:
    """Fracture-plane split: (dot(v, n) + d) * sign <= 0."""
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    return (vertices @ as_vec3(normal) + float(d)) * float(sign) <= 0.0
