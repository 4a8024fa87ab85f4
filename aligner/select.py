from __future__ import annotations
"""
Automatic model selection.

One robust match set is shared by every candidate model; each candidate is
scored by RMS reprojection error over all of those matches and the lowest
error wins (ties go to the simpler model).
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import cv2
import numpy as np

from common.errors import AlignmentError, NoValidAlignmentError, TransformEstimationError
from common.logging_setup import get_logger
from common.types import AlignmentConfig
from aligner.estimate import TransformEstimator
from aligner.features import FeatureSet, Match, Matcher, MatchingSettings, MatchPolicy, paired_points
from aligner.refine import Refiner
from aligner.transforms import Transform, TransformKind, residuals, rms_error


log = get_logger("aligner.select")

# RMS values closer than this count as a tie
RMS_TIE_PX = 1e-3


@dataclass(slots=True)
class AlignmentCandidate:
    kind: TransformKind
    transform: Transform
    matches: List[Match]
    src_points: np.ndarray
    dst_points: np.ndarray
    rms_error: float
    inlier_mask: Optional[np.ndarray] = None

    def beats(self, other: "AlignmentCandidate") -> bool:
        if self.rms_error < other.rms_error - RMS_TIE_PX:
            return True
        if abs(self.rms_error - other.rms_error) <= RMS_TIE_PX:
            return self.transform.kind.complexity < other.transform.kind.complexity
        return False


@dataclass(slots=True)
class Selection:
    winner: AlignmentCandidate
    scores: Dict[str, float] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


@dataclass
class CandidateSelector:
    matcher: Matcher
    estimator: TransformEstimator
    refiner: Refiner
    matching: MatchingSettings = field(default_factory=MatchingSettings)

    def models_for(self, config: AlignmentConfig) -> List[TransformKind]:
        if config.simple_match_forced:
            return [TransformKind.SIMILARITY]
        kinds = [TransformKind.SIMILARITY, TransformKind.AFFINE]
        if config.perspective_enabled:
            kinds.append(TransformKind.PROJECTIVE)
        return kinds

    def policy_for(self, config: AlignmentConfig) -> MatchPolicy:
        return self.matching.policy(config.mode, robust=not config.simple_match_forced)

    def select(
        self,
        target: np.ndarray,
        target_fs: FeatureSet,
        master_fs: FeatureSet,
        config: AlignmentConfig,
    ) -> Selection:
        """
        Raises InsufficientMatchesError when the shared match set is below the
        floor, NoValidAlignmentError when every candidate model failed.
        """
        policy = self.policy_for(config)
        matches = self.matcher.match(target_fs, master_fs, policy, center_weighted=config.center_weighted)
        src, dst = paired_points(target_fs, master_fs, matches)

        best: Optional[AlignmentCandidate] = None
        scores: Dict[str, float] = {}
        failures: Dict[str, str] = {}
        for kind in self.models_for(config):
            try:
                cand = self._candidate(kind, target, master_fs, matches, src, dst, policy, config)
            except (AlignmentError, cv2.error, np.linalg.LinAlgError) as e:
                failures[kind.value] = e.reason if isinstance(e, AlignmentError) else str(e)
                log.warning("candidate failed", extra={"extra": {"kind": kind.value, "reason": failures[kind.value]}})
                continue
            scores[kind.value] = cand.rms_error
            log.info("candidate", extra={"extra": {"kind": kind.value, "result_kind": cand.transform.kind.value,
                                                    "rms_px": round(cand.rms_error, 4)}})
            if best is None or cand.beats(best):
                best = cand

        if best is None:
            raise NoValidAlignmentError(failures)
        log.info("selected", extra={"extra": {"kind": best.transform.kind.value, "rms_px": round(best.rms_error, 4),
                                               "matches": len(matches)}})
        return Selection(winner=best, scores=scores, failures=failures)

    def _candidate(
        self,
        kind: TransformKind,
        target: np.ndarray,
        master_fs: FeatureSet,
        matches: List[Match],
        src: np.ndarray,
        dst: np.ndarray,
        policy: MatchPolicy,
        config: AlignmentConfig,
    ) -> AlignmentCandidate:
        fast = config.simple_match_forced
        if kind is TransformKind.PROJECTIVE:
            if config.refinement_enabled:
                t = self.refiner.coarse_to_fine(target, master_fs, src, dst, policy)
            else:
                t = self.estimator.projective(src, dst).transform
        else:
            t = self.estimator.estimate(src, dst, kind, fast=fast).transform
            if config.refinement_enabled:
                t = self.refiner.refine(target, master_fs, t, policy, fast=fast, check=(src, dst))

        rms = rms_error(t, src, dst)
        if not math.isfinite(rms):
            raise TransformEstimationError(kind.value, "non-finite reprojection error")
        inliers = residuals(t, src, dst) <= self.estimator.ransac_px
        return AlignmentCandidate(kind=kind, transform=t, matches=list(matches), src_points=src,
                                  dst_points=dst, rms_error=rms, inlier_mask=inliers)
