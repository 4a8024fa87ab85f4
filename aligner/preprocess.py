"""
Image conditioning shared by feature extraction and the perspective classifier:
- luminance conversion for gray / BGR / BGRA buffers
- CLAHE local contrast equalisation
- Canny edges
- bounded downscale for analysis-only passes
"""
from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np


def to_gray_u8(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        g = img
    elif img.shape[2] == 1:
        g = img[:, :, 0]
    elif img.shape[2] == 4:
        g = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    else:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return np.ascontiguousarray(g)


def clahe(gray_u8: np.ndarray, clip_limit: float = 2.0, tile_grid: Tuple[int, int] = (8, 8)) -> np.ndarray:
    cl = cv2.createCLAHE(clipLimit=float(clip_limit), tileGridSize=(int(tile_grid[0]), int(tile_grid[1])))
    return cl.apply(gray_u8)


def canny_edges(gray_u8: np.ndarray, lo: int = 50, hi: int = 150) -> np.ndarray:
    return cv2.Canny(gray_u8, threshold1=int(lo), threshold2=int(hi), L2gradient=True)


def limit_size(img: np.ndarray, max_side: int) -> Tuple[np.ndarray, float]:
    """
    Downscale so the longest side is at most max_side. Returns (img, scale).
    """
    h, w = img.shape[:2]
    longest = max(h, w)
    if max_side <= 0 or longest <= max_side:
        return img, 1.0
    s = max_side / float(longest)
    out = cv2.resize(img, (max(1, int(w * s)), max(1, int(h * s))), interpolation=cv2.INTER_AREA)
    return out, s


def prepare_for_features(
    img: np.ndarray,
    *,
    clahe_clip: float = 2.0,
    tile_grid: Tuple[int, int] = (8, 8),
) -> np.ndarray:
    """
    Luminance + CLAHE. Stabilises AKAZE response across exposure changes
    between frames of the same scene.
    """
    gray = to_gray_u8(img)
    if clahe_clip and clahe_clip > 0:
        gray = clahe(gray, clip_limit=clahe_clip, tile_grid=tile_grid)
    return gray
