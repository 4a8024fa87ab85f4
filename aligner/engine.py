from __future__ import annotations
"""
AlignmentEngine: the per-image entry point.

    master, target, AlignmentConfig -> AlignmentResult(processed_image, debug_image, ...)

The engine owns one instance of every stage (extractor, matcher, estimator,
refiner, selector, compositor) built from EngineSettings. It holds no
per-call state, so one engine can serve a worker pool.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import cv2
import numpy as np

from common.errors import AlignmentError, RuntimeNotReadyError
from common.logging_setup import get_logger
from common.types import AlignmentConfig, RasterImage
from common.utils import Stopwatch
from aligner.composite import Compositor, Padding
from aligner.estimate import TransformEstimator
from aligner.features import FeatureExtractor, FeatureSet, Matcher, MatchingSettings, draw_matches
from aligner.refine import Refiner
from aligner.select import CandidateSelector
from aligner.transforms import Transform, TransformKind, identity


log = get_logger("aligner.engine")


class CvRuntime:
    """
    Readiness handle for the OpenCV backend. Build one with
    CvRuntime.initialize() and hand it to every AlignmentEngine.
    """

    def __init__(self) -> None:
        self._ready = False
        self.version: Optional[str] = None
        self.num_threads: Optional[int] = None

    @classmethod
    def initialize(cls, num_threads: Optional[int] = None) -> "CvRuntime":
        rt = cls()
        rt.start(num_threads)
        return rt

    def start(self, num_threads: Optional[int] = None) -> None:
        if num_threads is not None:
            cv2.setNumThreads(int(num_threads))
        try:
            cv2.AKAZE_create()
        except (cv2.error, AttributeError) as e:
            raise RuntimeNotReadyError(f"OpenCV build lacks AKAZE: {e}") from e
        self.version = cv2.__version__
        self.num_threads = cv2.getNumThreads()
        self._ready = True
        log.info("opencv ready", extra={"extra": {"version": self.version, "threads": self.num_threads}})

    @property
    def ready(self) -> bool:
        return self._ready

    def require(self) -> None:
        if not self._ready:
            raise RuntimeNotReadyError("OpenCV runtime not initialised; call CvRuntime.initialize() first")


@dataclass
class EngineSettings:
    extractor: FeatureExtractor = field(default_factory=FeatureExtractor)
    matching: MatchingSettings = field(default_factory=MatchingSettings)
    estimator: TransformEstimator = field(default_factory=TransformEstimator)
    compositor: Compositor = field(default_factory=Compositor)
    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "EngineSettings":
        cfg = cfg or {}
        return cls(
            extractor=FeatureExtractor.from_config(cfg.get("features")),
            matching=MatchingSettings.from_config(cfg.get("matching")),
            estimator=TransformEstimator.from_config(cfg.get("estimation")),
            compositor=Compositor.from_config(cfg.get("compositor")),
            alignment=AlignmentConfig.from_dict(cfg.get("alignment")),
        )


@dataclass(slots=True)
class AlignmentResult:
    image_id: str
    transform: Transform
    processed_image: np.ndarray = field(repr=False)
    debug_image: np.ndarray = field(repr=False)
    rms_error: float
    match_count: int
    padding: Padding = (0, 0, 0, 0)
    elapsed_ms: int = 0

    @property
    def kind(self) -> TransformKind:
        return self.transform.kind

    def to_meta(self) -> Dict[str, Any]:
        h, w = self.processed_image.shape[:2]
        return {
            "image_id": self.image_id,
            "kind": self.kind.value,
            "rms_px": round(float(self.rms_error), 4),
            "matches": int(self.match_count),
            "matrix": self.transform.to_list(),
            "width": int(w),
            "height": int(h),
            "padding": list(self.padding),
            "elapsed_ms": int(self.elapsed_ms),
        }


def placeholder_debug() -> np.ndarray:
    return np.zeros((1, 1, 3), dtype=np.uint8)


class AlignmentEngine:
    def __init__(self, runtime: CvRuntime, settings: Optional[EngineSettings] = None) -> None:
        runtime.require()
        self.runtime = runtime
        self.settings = settings or EngineSettings()
        s = self.settings
        self.extractor = s.extractor
        self.matcher = Matcher(center_keep_fraction=s.matching.center_keep_fraction,
                               center_trigger=s.matching.center_trigger)
        self.estimator = s.estimator
        self.refiner = Refiner(self.extractor, self.matcher, self.estimator)
        self.selector = CandidateSelector(self.matcher, self.estimator, self.refiner, s.matching)
        self.compositor = s.compositor

    def features(self, image: RasterImage) -> FeatureSet:
        try:
            return self.extractor.extract(image.pixels, label=image.image_id)
        except AlignmentError as e:
            raise e.with_image(image.image_id)

    def process_image(
        self,
        master: RasterImage,
        target: RasterImage,
        config: Optional[AlignmentConfig] = None,
        *,
        is_master: bool = False,
        master_features: Optional[FeatureSet] = None,
    ) -> AlignmentResult:
        """
        Align `target` onto `master` and composite it on the aspect canvas.

        is_master short-circuits to the identity transform with a 1x1 debug
        placeholder. Raises an AlignmentError subclass tagged with the
        target's image_id.
        """
        config = config or self.settings.alignment
        sw = Stopwatch()
        try:
            if is_master:
                return self._master_result(master, config, sw)
            mfs = master_features if master_features is not None else self.features(master)
            tfs = self.features(target)
            sel = self.selector.select(target.pixels, tfs, mfs, config)
            win = sel.winner
            comp = self.compositor.composite(target.pixels, win.transform, master.size,
                                             config.aspect_ratio, config.border_policy)
            debug = draw_matches(target.pixels, tfs, master.pixels, mfs, win.matches, win.inlier_mask)
        except AlignmentError as e:
            raise e.with_image(target.image_id)
        except cv2.error as e:
            raise AlignmentError(f"OpenCV error: {e}", image_id=target.image_id) from e

        result = AlignmentResult(
            image_id=target.image_id,
            transform=win.transform,
            processed_image=comp.image,
            debug_image=debug,
            rms_error=win.rms_error,
            match_count=len(win.matches),
            padding=comp.padding,
            elapsed_ms=sw.ms(),
        )
        log.info("aligned", extra={"extra": {k: v for k, v in result.to_meta().items() if k != "matrix"}})
        return result

    def _master_result(self, master: RasterImage, config: AlignmentConfig, sw: Stopwatch) -> AlignmentResult:
        kind = TransformKind.PROJECTIVE if config.perspective_enabled else TransformKind.AFFINE
        t = identity(kind)
        comp = self.compositor.composite(master.pixels, t, master.size, config.aspect_ratio, config.border_policy)
        return AlignmentResult(
            image_id=master.image_id,
            transform=t,
            processed_image=comp.image,
            debug_image=placeholder_debug(),
            rms_error=0.0,
            match_count=0,
            padding=comp.padding,
            elapsed_ms=sw.ms(),
        )

    def process_variation(
        self,
        aligned_master: RasterImage,
        variation: RasterImage,
        config: Optional[AlignmentConfig] = None,
    ) -> AlignmentResult:
        """Re-entry for generated variations: always the plain robust path."""
        config = (config or self.settings.alignment).with_overrides(
            perspective_enabled=False, simple_match_forced=False
        )
        return self.process_image(aligned_master, variation, config)

    def golden(self, master_result: AlignmentResult) -> RasterImage:
        return RasterImage(master_result.processed_image, image_id=f"{master_result.image_id}:aligned")
