"""
Geometric transforms, target image coordinates -> master image coordinates.

Three variants, each carrying its own matrix shape:
    Similarity  2x3, rotation + uniform scale + translation
    Affine      2x3, adds shear / anisotropic scale
    Projective  3x3 homography (normalised so H[2,2] == 1)

Composition always goes through 3x3 homogeneous products.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Iterable, Tuple

import cv2
import numpy as np

from common.utils import as_points


class TransformKind(str, Enum):
    SIMILARITY = "similarity"
    AFFINE = "affine"
    PROJECTIVE = "projective"

    @property
    def complexity(self) -> int:
        # tie-break order when two candidates score the same
        return {"similarity": 0, "affine": 1, "projective": 2}[self.value]


@dataclass(frozen=True, eq=False)
class Transform:
    matrix: np.ndarray

    kind: ClassVar[TransformKind]
    shape: ClassVar[Tuple[int, int]] = (2, 3)

    def __post_init__(self) -> None:
        m = np.array(self.matrix, dtype=np.float64, copy=True)
        if m.shape != self.shape:
            raise ValueError(f"{type(self).__name__} needs a {self.shape} matrix, got {m.shape}")
        if not np.isfinite(m).all():
            raise ValueError(f"{type(self).__name__} matrix has non-finite entries")
        m = self._normalise(m)
        m.flags.writeable = False
        object.__setattr__(self, "matrix", m)

    def _normalise(self, m: np.ndarray) -> np.ndarray:
        return m

    @property
    def is_projective(self) -> bool:
        return False

    def homogeneous(self) -> np.ndarray:
        """3x3 copy of the matrix ([A|t; 0 0 1] for the 2x3 variants)."""
        h = np.eye(3, dtype=np.float64)
        h[:2, :] = self.matrix
        return h

    def apply(self, pts: Iterable) -> np.ndarray:
        p = as_points(pts)
        if len(p) == 0:
            return p
        q = np.hstack([p, np.ones((len(p), 1))]) @ self.homogeneous().T
        w = q[:, 2:3]
        w = np.where(np.abs(w) < 1e-12, 1e-12, w)
        return q[:, :2] / w

    def inverse(self) -> "Transform":
        inv = np.linalg.inv(self.homogeneous())
        return make_transform(self.kind, inv if self.is_projective else inv[:2, :])

    def to_list(self):
        return self.matrix.tolist()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({np.round(self.matrix, 4).tolist()})"


class Similarity(Transform):
    kind = TransformKind.SIMILARITY

    @property
    def scale(self) -> float:
        return float(math.hypot(self.matrix[0, 0], self.matrix[1, 0]))

    @property
    def rotation_deg(self) -> float:
        return float(math.degrees(math.atan2(self.matrix[1, 0], self.matrix[0, 0])))


class Affine(Transform):
    kind = TransformKind.AFFINE


class Projective(Transform):
    kind = TransformKind.PROJECTIVE
    shape = (3, 3)

    def _normalise(self, m: np.ndarray) -> np.ndarray:
        if abs(m[2, 2]) > 1e-12:
            m = m / m[2, 2]
        return m

    @property
    def is_projective(self) -> bool:
        return True

    def homogeneous(self) -> np.ndarray:
        return np.array(self.matrix, dtype=np.float64)


_BY_KIND = {
    TransformKind.SIMILARITY: Similarity,
    TransformKind.AFFINE: Affine,
    TransformKind.PROJECTIVE: Projective,
}


def make_transform(kind: TransformKind, matrix: np.ndarray) -> Transform:
    return _BY_KIND[TransformKind(kind)](matrix)


def identity(kind: TransformKind = TransformKind.AFFINE) -> Transform:
    kind = TransformKind(kind)
    eye = np.eye(3, dtype=np.float64)
    return make_transform(kind, eye if kind is TransformKind.PROJECTIVE else eye[:2, :])


def compose(outer: Transform, inner: Transform) -> Transform:
    """
    outer ∘ inner: apply `inner` first, then `outer`.

    Projective if either stage is projective; otherwise the 3x3 product is
    truncated back to 2x3. Two similarities stay a similarity.
    """
    m = outer.homogeneous() @ inner.homogeneous()
    if outer.is_projective or inner.is_projective:
        return Projective(m)
    if isinstance(outer, Similarity) and isinstance(inner, Similarity):
        return Similarity(m[:2, :])
    return Affine(m[:2, :])


def residuals(transform: Transform, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """Euclidean distance between transform(src) and dst, per point."""
    s = as_points(src)
    d = as_points(dst)
    if len(s) != len(d):
        raise ValueError("src/dst point counts differ")
    if len(s) == 0:
        return np.zeros((0,), dtype=np.float64)
    return np.linalg.norm(transform.apply(s) - d, axis=1)


def rms_error(transform: Transform, src: np.ndarray, dst: np.ndarray) -> float:
    err = residuals(transform, src, dst)
    if err.size == 0:
        return float("inf")
    return float(np.sqrt(np.mean(err ** 2)))


def warp_image(
    pixels: np.ndarray,
    transform: Transform,
    size: Tuple[int, int],
    *,
    interpolation: int = cv2.INTER_LINEAR,
    border_mode: int = cv2.BORDER_CONSTANT,
    border_value=0,
) -> np.ndarray:
    """
    Warp `pixels` (target frame) into a canvas of `size` = (width, height)
    in master coordinates.
    """
    w, h = int(size[0]), int(size[1])
    if transform.is_projective:
        return cv2.warpPerspective(pixels, transform.matrix, (w, h), flags=interpolation,
                                   borderMode=border_mode, borderValue=border_value)
    return cv2.warpAffine(pixels, transform.matrix, (w, h), flags=interpolation,
                          borderMode=border_mode, borderValue=border_value)
