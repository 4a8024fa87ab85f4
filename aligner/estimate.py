from __future__ import annotations
"""
Robust transform estimation from point correspondences (target -> master).

Fallback chain, all local to this module:
    Projective -> Affine          (degenerate points, no model, low inlier ratio)
    Affine     -> partial Affine  (collinear points, no model)
"""

import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np

from common.errors import TransformEstimationError
from common.logging_setup import get_logger
from common.utils import as_points, is_degenerate
from aligner.transforms import Affine, Projective, Similarity, TransformKind, Transform


log = get_logger("aligner.estimate")


@dataclass(slots=True)
class Estimate:
    transform: Transform
    inlier_mask: np.ndarray
    fallback: Optional[str] = None

    @property
    def inliers(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))

    @property
    def inlier_ratio(self) -> float:
        n = len(self.inlier_mask)
        return self.inliers / float(n) if n else 0.0


def _mask(mask: Optional[np.ndarray], n: int) -> np.ndarray:
    if mask is None:
        return np.ones((n,), dtype=bool)
    return mask.ravel().astype(bool)


def _pair(src, dst) -> Tuple[np.ndarray, np.ndarray]:
    s, d = as_points(src), as_points(dst)
    if len(s) != len(d):
        raise ValueError(f"src/dst point counts differ ({len(s)} vs {len(d)})")
    return s, d


@dataclass
class TransformEstimator:
    ransac_px: float = 5.0
    fast_ransac_px: float = 3.0
    min_inlier_ratio: float = 0.30
    max_iters: int = 2000
    confidence: float = 0.995

    @classmethod
    def from_config(cls, d: Optional[Dict[str, Any]]) -> "TransformEstimator":
        d = d or {}
        return cls(
            ransac_px=float(d.get("ransac_px", 5.0)),
            fast_ransac_px=float(d.get("fast_ransac_px", 3.0)),
            min_inlier_ratio=float(d.get("min_inlier_ratio", 0.30)),
            max_iters=int(d.get("max_iters", 2000)),
            confidence=float(d.get("confidence", 0.995)),
        )

    def estimate(self, src, dst, kind: TransformKind, *, fast: bool = False) -> Estimate:
        kind = TransformKind(kind)
        if kind is TransformKind.SIMILARITY:
            return self.similarity(src, dst, fast=fast)
        if kind is TransformKind.AFFINE:
            return self.affine(src, dst, fast=fast)
        return self.projective(src, dst)

    # -----------------------------
    # Affine
    # -----------------------------

    def affine(self, src, dst, *, fast: bool = False) -> Estimate:
        """
        Full 6-DOF affine via RANSAC. `fast` uses the tighter OpenCV default
        threshold (similarity-only path).
        """
        s, d = _pair(src, dst)
        thr = self.fast_ransac_px if fast else self.ransac_px
        if len(s) >= 3 and not is_degenerate(s) and not is_degenerate(d):
            M, mask = cv2.estimateAffine2D(
                s.astype(np.float32), d.astype(np.float32),
                method=cv2.RANSAC,
                ransacReprojThreshold=float(thr),
                maxIters=int(self.max_iters),
                confidence=float(self.confidence),
            )
            if M is not None and np.isfinite(M).all():
                return Estimate(Affine(M), _mask(mask, len(s)))
            reason = "estimateAffine2D returned no model"
        else:
            reason = "degenerate point set" if len(s) >= 3 else f"only {len(s)} points"
        log.warning("affine fallback to partial affine", extra={"extra": {"reason": reason, "points": len(s)}})
        return self._partial_affine(s, d, thr, reason)

    def _partial_affine(self, s: np.ndarray, d: np.ndarray, thr: float, reason: str) -> Estimate:
        if len(s) < 2:
            raise TransformEstimationError("affine", f"{reason}; need at least 2 points")
        M, mask = cv2.estimateAffinePartial2D(
            s.astype(np.float32), d.astype(np.float32),
            method=cv2.RANSAC,
            ransacReprojThreshold=float(thr),
            maxIters=int(self.max_iters),
            confidence=float(self.confidence),
        )
        if M is None or not np.isfinite(M).all():
            raise TransformEstimationError("affine", f"{reason}; partial affine returned no model")
        return Estimate(Affine(M), _mask(mask, len(s)), fallback="partial-affine")

    # -----------------------------
    # Similarity
    # -----------------------------

    def similarity(self, src, dst, *, fast: bool = False) -> Estimate:
        """
        Affine fit projected onto rotation + uniform scale, translation
        re-fitted on the affine inliers.
        """
        s, d = _pair(src, dst)
        try:
            aff = self.affine(s, d, fast=fast)
        except TransformEstimationError as e:
            raise TransformEstimationError("similarity", e.reason) from e

        (a, b, _), (c, e_, _) = aff.transform.matrix
        theta = math.atan2(c - b, a + e_)
        scale = 0.5 * (math.hypot(a, c) + math.hypot(b, e_))
        if not math.isfinite(scale) or scale <= 1e-9:
            raise TransformEstimationError("similarity", "collapsed scale")

        R = scale * np.array([[math.cos(theta), -math.sin(theta)],
                              [math.sin(theta), math.cos(theta)]])
        inl = aff.inlier_mask if aff.inliers else np.ones((len(s),), dtype=bool)
        t = np.mean(d[inl] - s[inl] @ R.T, axis=0)
        M = np.hstack([R, t.reshape(2, 1)])
        return Estimate(Similarity(M), aff.inlier_mask, fallback=aff.fallback)

    # -----------------------------
    # Projective
    # -----------------------------

    def projective(self, src, dst) -> Estimate:
        s, d = _pair(src, dst)
        reason: str
        if len(s) < 4:
            reason = f"only {len(s)} points"
        elif is_degenerate(s) or is_degenerate(d):
            reason = "degenerate point set"
        else:
            try:
                H, mask = cv2.findHomography(
                    s.astype(np.float32), d.astype(np.float32), cv2.RANSAC,
                    ransacReprojThreshold=float(self.ransac_px),
                    maxIters=int(self.max_iters),
                    confidence=float(self.confidence),
                )
            except cv2.error as e:
                H, mask = None, None
                reason = f"findHomography failed: {e}"
            else:
                reason = "findHomography returned no model"
            if H is not None and np.isfinite(H).all() and abs(np.linalg.det(H)) > 1e-12:
                est = Estimate(Projective(H), _mask(mask, len(s)))
                if est.inlier_ratio >= self.min_inlier_ratio:
                    log.debug("homography", extra={"extra": {"inliers": est.inliers, "total": len(s)}})
                    return est
                reason = f"inlier ratio {est.inlier_ratio:.2f} below {self.min_inlier_ratio:.2f}"

        log.warning("projective fallback to affine", extra={"extra": {"reason": reason, "points": len(s)}})
        try:
            est = self.affine(s, d)
        except TransformEstimationError as e:
            raise TransformEstimationError("projective", f"{reason}; {e.reason}") from e
        return replace(est, fallback="affine")
