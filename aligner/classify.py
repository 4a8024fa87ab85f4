from __future__ import annotations
"""
Frontal vs. perspective-distorted heuristic.

Two signals:
- straight-segment orientation (Canny + probabilistic Hough): frontal shots of
  man-made scenes are dominated by axis-aligned lines
- keypoint density balance across the four quadrants: a receding plane piles
  features up on the far side
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from aligner.features import FeatureExtractor
from aligner.preprocess import canny_edges, limit_size, to_gray_u8


log = get_logger("aligner.classify")

EXACT_DEG = 5.0
NEAR_DEG = 15.0
DIAGONAL_DEG = 30.0


@dataclass(slots=True)
class LineStats:
    segments: int
    exact_ratio: float
    near_ratio: float
    diagonal_ratio: float
    density_cv: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segments": self.segments,
            "exact_ratio": round(self.exact_ratio, 4),
            "near_ratio": round(self.near_ratio, 4),
            "diagonal_ratio": round(self.diagonal_ratio, 4),
            "density_cv": round(self.density_cv, 4),
        }


def axis_deviation_deg(angles_deg: np.ndarray) -> np.ndarray:
    """Angle to the nearest horizontal/vertical axis, in [0, 45]."""
    a = np.mod(np.abs(np.asarray(angles_deg, dtype=np.float64)), 90.0)
    return np.minimum(a, 90.0 - a)


def segment_angles(lines: Optional[np.ndarray]) -> np.ndarray:
    if lines is None or len(lines) == 0:
        return np.zeros((0,), dtype=np.float64)
    seg = np.asarray(lines, dtype=np.float64).reshape(-1, 4)
    return np.degrees(np.arctan2(seg[:, 3] - seg[:, 1], seg[:, 2] - seg[:, 0]))


def quadrant_density_cv(points: np.ndarray, size: Tuple[int, int]) -> float:
    """Coefficient of variation of keypoint counts over the four quadrants."""
    w, h = size
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) == 0:
        return 1.0
    right = pts[:, 0] >= w / 2.0
    bottom = pts[:, 1] >= h / 2.0
    counts = np.array([
        np.count_nonzero(~right & ~bottom),
        np.count_nonzero(right & ~bottom),
        np.count_nonzero(~right & bottom),
        np.count_nonzero(right & bottom),
    ], dtype=np.float64)
    mean = counts.mean()
    return float(counts.std() / mean) if mean > 0 else 1.0


def line_stats(angles_deg: Sequence[float], density_cv: float) -> LineStats:
    dev = axis_deviation_deg(np.asarray(angles_deg, dtype=np.float64))
    n = int(dev.size)
    if n == 0:
        return LineStats(0, 0.0, 0.0, 0.0, float(density_cv))
    return LineStats(
        segments=n,
        exact_ratio=float(np.count_nonzero(dev <= EXACT_DEG)) / n,
        near_ratio=float(np.count_nonzero(dev <= NEAR_DEG)) / n,
        diagonal_ratio=float(np.count_nonzero(dev >= DIAGONAL_DEG)) / n,
        density_cv=float(density_cv),
    )


def score_indicators(stats: LineStats) -> Tuple[int, int]:
    """(strong, moderate) indicator counts. Line indicators need at least one segment."""
    has_lines = stats.segments > 0
    strong = sum([
        has_lines and stats.exact_ratio >= 0.5,
        has_lines and stats.diagonal_ratio <= 0.10,
        stats.density_cv <= 0.15,
    ])
    moderate = sum([
        has_lines and stats.near_ratio >= 0.65,
        has_lines and stats.diagonal_ratio <= 0.25,
        stats.density_cv <= 0.35,
        stats.segments >= 8,
    ])
    return int(strong), int(moderate)


def is_frontal(stats: LineStats) -> bool:
    strong, moderate = score_indicators(stats)
    return strong >= 2 or moderate >= 3


@dataclass
class PerspectiveClassifier:
    extractor: FeatureExtractor = field(default_factory=FeatureExtractor)
    canny_low: int = 50
    canny_high: int = 150
    hough_threshold: int = 50
    min_line_frac: float = 0.08
    max_line_gap: int = 10
    max_side: int = 1024

    @classmethod
    def from_config(cls, d: Optional[Dict[str, Any]], extractor: Optional[FeatureExtractor] = None) -> "PerspectiveClassifier":
        d = d or {}
        return cls(
            extractor=extractor or FeatureExtractor(),
            canny_low=int(d.get("canny_low", 50)),
            canny_high=int(d.get("canny_high", 150)),
            hough_threshold=int(d.get("hough_threshold", 50)),
            min_line_frac=float(d.get("min_line_frac", 0.08)),
            max_line_gap=int(d.get("max_line_gap", 10)),
            max_side=int(d.get("max_side", 1024)),
        )

    def analyze(self, pixels: np.ndarray) -> LineStats:
        small, _ = limit_size(pixels, self.max_side)
        gray = to_gray_u8(small)
        h, w = gray.shape[:2]
        edges = canny_edges(gray, self.canny_low, self.canny_high)
        lines = cv2.HoughLinesP(
            edges, 1, np.pi / 180, threshold=int(self.hough_threshold),
            minLineLength=max(10, int(self.min_line_frac * min(h, w))),
            maxLineGap=int(self.max_line_gap),
        )
        fs = self.extractor.extract(small, label="classifier input")
        return line_stats(segment_angles(lines), quadrant_density_cv(fs.points, (w, h)))

    def needs_perspective_correction(self, pixels: np.ndarray, image_id: str = "image") -> bool:
        """True unless the image looks frontal. Any internal failure answers True."""
        try:
            stats = self.analyze(pixels)
        except Exception as e:
            log.warning("classifier failed, assuming perspective", extra={"extra": {"image": image_id, "reason": str(e)}})
            return True
        strong, moderate = score_indicators(stats)
        needs = not is_frontal(stats)
        log.info("perspective classified", extra={"extra": {"image": image_id, "needs_correction": needs,
                                                             "strong": strong, "moderate": moderate,
                                                             **stats.to_dict()}})
        return needs
