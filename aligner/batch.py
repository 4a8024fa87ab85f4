from __future__ import annotations
"""
Batch alignment over a worker pool.

Stages:
  1. master -> identity result (aligned master, the golden reference)
  2. standard and simple-match items against the raw master (pool)
  3. optional ensemble correction of stage-2 outputs against the golden
  4. perspective items against the aligned master output (pool)

Per-image failures are collected, never raised; cancellation is checked
between images.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from common.errors import AlignmentError, InsufficientMatchesError, NoValidAlignmentError
from common.logging_setup import get_logger
from common.types import AlignmentConfig, RasterImage
from common.utils import RunningStats, Stopwatch
from aligner.classify import PerspectiveClassifier
from aligner.engine import AlignmentEngine, AlignmentResult
from aligner.ensemble import EnsembleCorrector, EnsembleOutcome
from aligner.features import FeatureSet


log = get_logger("aligner.batch")

ProgressFn = Callable[[int, int, str], None]


@dataclass
class BatchItem:
    """
    perspective: True/False forces the choice; None defers to the classifier
    (when enabled) or to the batch config.
    """
    image: RasterImage
    perspective: Optional[bool] = None
    simple_match: bool = False

    @property
    def image_id(self) -> str:
        return self.image.image_id


@dataclass(slots=True)
class ImageFailure:
    image_id: str
    error_type: str
    reason: str
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"image_id": self.image_id, "error_type": self.error_type, "reason": self.reason, "hint": self.hint}


def describe_failure(exc: BaseException, image_id: Optional[str] = None) -> ImageFailure:
    """User-facing description of a per-image failure, with a remedy where one exists."""
    iid = image_id or getattr(exc, "image_id", None) or "image"
    reason = exc.reason if isinstance(exc, AlignmentError) else str(exc)
    hint: Optional[str] = None
    if isinstance(exc, InsufficientMatchesError):
        hint = ("Try enabling greedy mode, or use a target with more overlapping detail "
                "and less extreme viewpoint change.")
    elif isinstance(exc, NoValidAlignmentError):
        hint = "Try greedy mode or toggle perspective correction for this image."
    return ImageFailure(image_id=iid, error_type=type(exc).__name__, reason=reason, hint=hint)


@dataclass
class BatchReport:
    master: Optional[AlignmentResult] = None
    results: List[AlignmentResult] = field(default_factory=list)
    failures: List[ImageFailure] = field(default_factory=list)
    ensemble: List[EnsembleOutcome] = field(default_factory=list)
    cancelled: bool = False
    elapsed_ms: int = 0

    def result_for(self, image_id: str) -> Optional[AlignmentResult]:
        for r in self.results:
            if r.image_id == image_id:
                return r
        return None

    def summary(self) -> Dict[str, Any]:
        rms = RunningStats()
        for r in self.results:
            rms.add(float(r.rms_error))
        return {
            "aligned": len(self.results),
            "failed": len(self.failures),
            "ensemble_corrected": sum(1 for o in self.ensemble if o.corrected),
            "rms_mean": round(rms.mean, 4) if rms.n else None,
            "rms_std": round(rms.std, 4) if rms.n else None,
            "cancelled": self.cancelled,
            "elapsed_ms": self.elapsed_ms,
        }


class BatchRunner:
    def __init__(
        self,
        engine: AlignmentEngine,
        *,
        workers: int = 4,
        classifier: Optional[PerspectiveClassifier] = None,
        classify_perspective: bool = False,
    ) -> None:
        self.engine = engine
        self.workers = max(1, int(workers))
        self.classifier = classifier
        self.classify_perspective = bool(classify_perspective and classifier is not None)
        self.corrector = EnsembleCorrector(engine)

    @classmethod
    def from_config(cls, engine: AlignmentEngine, cfg: Optional[Dict[str, Any]]) -> "BatchRunner":
        cfg = cfg or {}
        b = cfg.get("batch", {}) or {}
        classifier = PerspectiveClassifier.from_config(cfg.get("classifier"), extractor=engine.extractor)
        return cls(engine, workers=int(b.get("workers", 4)), classifier=classifier,
                   classify_perspective=bool(b.get("classify_perspective", False)))

    def wants_perspective(self, item: BatchItem, config: AlignmentConfig) -> bool:
        if item.simple_match:
            return False
        if item.perspective is not None:
            return bool(item.perspective)
        if self.classify_perspective:
            return self.classifier.needs_perspective_correction(item.image.pixels, image_id=item.image_id)
        return config.perspective_enabled

    def _pool(
        self,
        reference: RasterImage,
        reference_fs: FeatureSet,
        jobs: Sequence[Tuple[int, BatchItem, AlignmentConfig]],
        report: BatchReport,
        done: List[int],
        total: int,
        progress: Optional[ProgressFn],
        cancel: threading.Event,
    ) -> Dict[int, AlignmentResult]:
        out: Dict[int, AlignmentResult] = {}
        if not jobs:
            return out

        def work(item: BatchItem, cfg: AlignmentConfig) -> Optional[AlignmentResult]:
            if cancel.is_set():
                return None
            return self.engine.process_image(reference, item.image, cfg, master_features=reference_fs)

        failures: Dict[int, ImageFailure] = {}
        with ThreadPoolExecutor(max_workers=min(self.workers, len(jobs))) as ex:
            futs = {ex.submit(work, item, cfg): (idx, item) for idx, item, cfg in jobs}
            for fut in as_completed(futs):
                idx, item = futs[fut]
                try:
                    res = fut.result()
                except AlignmentError as e:
                    failures[idx] = describe_failure(e, item.image_id)
                    log.warning("image failed", extra={"extra": failures[idx].to_dict()})
                    res = None
                except Exception as e:
                    # unexpected worker error: record it, keep the rest of the batch
                    failures[idx] = describe_failure(e, item.image_id)
                    log.error("image failed unexpectedly", exc_info=True, extra={"extra": failures[idx].to_dict()})
                    res = None
                if cancel.is_set():
                    report.cancelled = True
                    continue
                if res is not None:
                    out[idx] = res
                done[0] += 1
                if progress is not None:
                    progress(done[0], total, item.image_id)
        report.failures.extend(failures[i] for i in sorted(failures))
        return out

    def run(
        self,
        master: RasterImage,
        items: Sequence[Union[BatchItem, RasterImage]],
        config: Optional[AlignmentConfig] = None,
        *,
        ensemble: bool = True,
        progress: Optional[ProgressFn] = None,
        cancel: Optional[threading.Event] = None,
    ) -> BatchReport:
        """
        Align every item onto `master`. Results keep the input order.

        Master-level failures (no features in the master) propagate; per-item
        failures land in report.failures.
        """
        config = config or self.engine.settings.alignment
        cancel = cancel or threading.Event()
        sw = Stopwatch()
        items = [it if isinstance(it, BatchItem) else BatchItem(it) for it in items]
        report = BatchReport()
        total = len(items)
        done = [0]

        report.master = self.engine.process_image(master, master, config, is_master=True)
        golden = self.engine.golden(report.master)
        log.info("batch started", extra={"extra": {"master": master.image_id, "items": total,
                                                    "workers": self.workers, "ensemble": ensemble}})

        standard: List[Tuple[int, BatchItem, AlignmentConfig]] = []
        perspective: List[Tuple[int, BatchItem, AlignmentConfig]] = []
        for idx, item in enumerate(items):
            if self.wants_perspective(item, config):
                perspective.append((idx, item, config.with_overrides(perspective_enabled=True,
                                                                     simple_match_forced=False)))
            else:
                simple = item.simple_match or config.simple_match_forced
                standard.append((idx, item, config.with_overrides(perspective_enabled=False,
                                                                  simple_match_forced=simple)))

        by_index: Dict[int, AlignmentResult] = {}
        if standard and not cancel.is_set():
            master_fs = self.engine.features(master)
            first = self._pool(master, master_fs, standard, report, done, total, progress, cancel)
            if ensemble and first and not cancel.is_set():
                order = sorted(first)
                corrected, outcomes = self.corrector.correct(
                    golden, report.master.padding, [first[i] for i in order], config
                )
                first = dict(zip(order, corrected))
                report.ensemble = outcomes
            by_index.update(first)

        if perspective and not cancel.is_set():
            golden_fs = self.engine.features(golden)
            by_index.update(self._pool(golden, golden_fs, perspective, report, done, total, progress, cancel))

        report.results = [by_index[i] for i in sorted(by_index)]
        report.cancelled = report.cancelled or cancel.is_set()
        report.elapsed_ms = sw.ms()
        log.info("batch finished", extra={"extra": report.summary()})
        return report
