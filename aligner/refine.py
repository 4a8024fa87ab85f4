from __future__ import annotations
"""
Second-pass refinement: warp the target with a first estimate, re-detect,
re-match against the master and compose the residual correction.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from common.errors import AlignmentError
from common.logging_setup import get_logger
from aligner.estimate import TransformEstimator
from aligner.features import FeatureExtractor, FeatureSet, Matcher, MatchPolicy, paired_points
from aligner.transforms import Transform, compose, rms_error, warp_image


log = get_logger("aligner.refine")


@dataclass
class Refiner:
    extractor: FeatureExtractor
    matcher: Matcher
    estimator: TransformEstimator

    def _rematch(
        self,
        target: np.ndarray,
        first: Transform,
        master_fs: FeatureSet,
        policy: MatchPolicy,
        label: str,
    ) -> Tuple[np.ndarray, np.ndarray]:
        warped = warp_image(target, first, master_fs.image_size)
        fs = self.extractor.extract(warped, label=label)
        matches = self.matcher.match(fs, master_fs, policy)
        return paired_points(fs, master_fs, matches)

    def refine(
        self,
        target: np.ndarray,
        master_fs: FeatureSet,
        first: Transform,
        policy: MatchPolicy,
        *,
        fast: bool = False,
        check: Optional[Tuple[np.ndarray, np.ndarray]] = None,
    ) -> Transform:
        """
        refinement ∘ first, same model kind as `first`.

        Failures in the second stage return `first` unchanged. When `check`
        (src, dst) correspondences are given, a refinement that raises their
        RMS is also discarded.
        """
        try:
            s2, d2 = self._rematch(target, first, master_fs, policy, "pre-aligned target")
            delta = self.estimator.estimate(s2, d2, first.kind, fast=fast).transform
            refined = compose(delta, first)
        except (AlignmentError, cv2.error, ValueError, np.linalg.LinAlgError) as e:
            log.warning("refinement skipped", extra={"extra": {"kind": first.kind.value, "reason": str(e)}})
            return first

        if check is not None:
            before = rms_error(first, *check)
            after = rms_error(refined, *check)
            if after > before:
                log.info("refinement rejected", extra={"extra": {"kind": first.kind.value,
                                                                  "rms_before": before, "rms_after": after}})
                return first
        return refined

    def coarse_to_fine(
        self,
        target: np.ndarray,
        master_fs: FeatureSet,
        src: np.ndarray,
        dst: np.ndarray,
        policy: MatchPolicy,
    ) -> Transform:
        """
        Affine on the raw matches, then a homography on the affine-aligned
        image, composed. Falls back to a direct homography fit on (src, dst).
        """
        try:
            coarse = self.estimator.affine(src, dst).transform
            s2, d2 = self._rematch(target, coarse, master_fs, policy, "coarse-aligned target")
            fine = self.estimator.projective(s2, d2).transform
            return compose(fine, coarse)
        except (AlignmentError, cv2.error, ValueError, np.linalg.LinAlgError) as e:
            log.warning("coarse-to-fine fallback to direct fit", extra={"extra": {"reason": str(e)}})
        return self.estimator.projective(src, dst).transform
