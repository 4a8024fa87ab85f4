"""
Synthetic fixtures shared by the unit and integration suites.

- textured_image: deterministic scene with enough corners/blobs for AKAZE
- warp_target: produce a target whose content maps onto the master through a known transform
- synthetic_feature_sets: exact correspondences with identical binary descriptors
"""

import math
from typing import Optional, Tuple

import cv2
import numpy as np

from aligner.features import FeatureSet


DESCRIPTOR_BYTES = 61  # AKAZE MLDB descriptor length


def textured_image(width: int = 640, height: int = 480, seed: int = 0, channels: int = 3) -> np.ndarray:
    rng = np.random.default_rng(seed)
    img = np.full((height, width, 3), 128, dtype=np.uint8)
    for _ in range(60):
        x0, y0 = int(rng.integers(0, width - 20)), int(rng.integers(0, height - 20))
        w, h = int(rng.integers(12, max(13, width // 6))), int(rng.integers(12, max(13, height // 6)))
        color = tuple(int(c) for c in rng.integers(0, 256, 3))
        cv2.rectangle(img, (x0, y0), (min(width - 1, x0 + w), min(height - 1, y0 + h)), color, -1)
    for _ in range(40):
        c = (int(rng.integers(0, width)), int(rng.integers(0, height)))
        r = int(rng.integers(5, max(6, min(width, height) // 12)))
        color = tuple(int(v) for v in rng.integers(0, 256, 3))
        cv2.circle(img, c, r, color, -1)
    for i in range(8):
        org = (int(rng.integers(0, width - 120)), int(rng.integers(20, height)))
        color = tuple(int(v) for v in rng.integers(0, 256, 3))
        cv2.putText(img, f"LOGO{i}", org, cv2.FONT_HERSHEY_SIMPLEX, 0.9, color, 2, cv2.LINE_AA)
    img = cv2.GaussianBlur(img, (3, 3), 0)
    if channels == 1:
        return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if channels == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
    return img


def similarity_matrix(angle_deg: float, scale: float, tx: float, ty: float) -> np.ndarray:
    a = math.radians(angle_deg)
    return np.array([
        [scale * math.cos(a), -scale * math.sin(a), tx],
        [scale * math.sin(a), scale * math.cos(a), ty],
    ], dtype=np.float64)


def warp_target(master: np.ndarray, target_to_master: np.ndarray, size: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """
    target(x) = master(T x): the returned image aligns onto `master` through T.
    """
    h, w = master.shape[:2]
    size = size or (w, h)
    return cv2.warpAffine(master, target_to_master, size, flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
                          borderMode=cv2.BORDER_CONSTANT, borderValue=0)


def apply_affine(M: np.ndarray, pts: np.ndarray) -> np.ndarray:
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    return pts @ M[:, :2].T + M[:, 2]


def apply_homography(H: np.ndarray, pts: np.ndarray) -> np.ndarray:
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    q = np.hstack([pts, np.ones((len(pts), 1))]) @ H.T
    return q[:, :2] / q[:, 2:3]


def synthetic_feature_sets(
    target_pts: np.ndarray,
    master_pts: np.ndarray,
    image_size: Tuple[int, int] = (800, 600),
    extra_master: int = 10,
    seed: int = 0,
) -> Tuple[FeatureSet, FeatureSet]:
    """
    Target/master feature sets where target_pts[i] <-> master_pts[i] share an
    identical descriptor. `extra_master` unrelated master keypoints act as
    second neighbours for the ratio test.
    """
    rng = np.random.default_rng(seed)
    n = len(target_pts)
    des = rng.integers(0, 256, (n, DESCRIPTOR_BYTES), dtype=np.uint8)
    extra_pts = rng.uniform([0, 0], image_size, (extra_master, 2))
    extra_des = rng.integers(0, 256, (extra_master, DESCRIPTOR_BYTES), dtype=np.uint8)
    target_fs = FeatureSet.from_points(np.asarray(target_pts).reshape(-1, 2), des, image_size)
    master_fs = FeatureSet.from_points(
        np.vstack([np.asarray(master_pts).reshape(-1, 2), extra_pts]),
        np.vstack([des, extra_des]),
        image_size,
    )
    return target_fs, master_fs


def random_points(n: int, image_size: Tuple[int, int] = (800, 600), margin: float = 80.0, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    w, h = image_size
    return rng.uniform([margin, margin], [w - margin, h - margin], (n, 2))
