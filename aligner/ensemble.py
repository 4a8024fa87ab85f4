from __future__ import annotations
"""
Golden-template correction pass.

Every processed output of a batch is re-aligned (Affine, robust strict
matching, refinement on) against the aligned master output and composited
again on the same canvas. second_rms is the reprojection error of that
re-alignment against the golden reference. A correction that fails keeps
the first-pass output.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.errors import AlignmentError
from common.logging_setup import get_logger
from common.types import AlignmentConfig, MatchMode, RasterImage
from aligner.engine import AlignmentEngine, AlignmentResult
from aligner.features import FeatureSet, paired_points
from aligner.transforms import Affine, Transform, compose, rms_error


log = get_logger("aligner.ensemble")


@dataclass(slots=True)
class EnsembleOutcome:
    image_id: str
    corrected: bool
    first_rms: float
    second_rms: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_id": self.image_id,
            "corrected": self.corrected,
            "first_rms": round(float(self.first_rms), 4),
            "second_rms": None if self.second_rms is None else round(float(self.second_rms), 4),
            "reason": self.reason,
        }


def _shift(padding) -> Affine:
    top, _, left, _ = padding
    return Affine(np.array([[1.0, 0.0, float(left)], [0.0, 1.0, float(top)]]))


class EnsembleCorrector:
    def __init__(self, engine: AlignmentEngine) -> None:
        self.engine = engine

    def _correction(self, processed: np.ndarray, golden_fs: FeatureSet, image_id: str) -> Tuple[Transform, float]:
        e = self.engine
        policy = e.settings.matching.policy(MatchMode.STRICT, robust=True)
        fs = e.extractor.extract(processed, label=f"{image_id}:processed")
        matches = e.matcher.match(fs, golden_fs, policy)
        src, dst = paired_points(fs, golden_fs, matches)
        first = e.estimator.affine(src, dst).transform
        t = e.refiner.refine(processed, golden_fs, first, policy, check=(src, dst))
        return t, rms_error(t, src, dst)

    def correct(
        self,
        golden: RasterImage,
        golden_padding,
        results: Sequence[AlignmentResult],
        config: AlignmentConfig,
    ) -> Tuple[List[AlignmentResult], List[EnsembleOutcome]]:
        """
        Returns (results, outcomes) in input order. Outputs whose correction
        failed are returned unchanged.
        """
        if not results:
            return [], []
        try:
            golden_fs = self.engine.features(golden)
        except AlignmentError as e:
            log.warning("ensemble skipped: golden reference has no features", extra={"extra": {"reason": e.reason}})
            return list(results), [
                EnsembleOutcome(r.image_id, False, r.rms_error, reason=e.reason) for r in results
            ]

        out: List[AlignmentResult] = []
        outcomes: List[EnsembleOutcome] = []
        canvas = golden.size
        for r in results:
            try:
                corr, golden_rms = self._correction(r.processed_image, golden_fs, r.image_id)
                comp = self.engine.compositor.composite(r.processed_image, corr, canvas,
                                                        config.aspect_ratio, config.border_policy)
            except (AlignmentError, cv2.error, ValueError) as e:
                reason = e.reason if isinstance(e, AlignmentError) else str(e)
                log.warning("ensemble correction failed, keeping first pass",
                            extra={"extra": {"image": r.image_id, "reason": reason}})
                out.append(r)
                outcomes.append(EnsembleOutcome(r.image_id, False, r.rms_error, reason=reason))
                continue

            # processed canvas -> golden canvas, expressed back in target -> master coordinates
            shift = _shift(golden_padding)
            total = compose(shift.inverse(), compose(corr, compose(_shift(r.padding), r.transform)))
            out.append(replace(r, transform=total, processed_image=comp.image, rms_error=golden_rms))
            outcomes.append(EnsembleOutcome(r.image_id, True, r.rms_error, second_rms=golden_rms))
            log.info("ensemble corrected", extra={"extra": {"image": r.image_id, "first_rms": round(r.rms_error, 4),
                                                             "second_rms": round(golden_rms, 4)}})
        return out, outcomes
