from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from common.config import DEFAULT_CONFIG_PATH, load_config
from common.errors import AlignmentError, ConfigError
from common.logging_setup import get_logger, setup_logging
from common.types import AlignmentConfig, AspectRatio, BorderPolicy, MatchMode, RasterImage
from common.utils import iso_now_ms
from aligner.batch import BatchItem, BatchReport, BatchRunner
from aligner.engine import AlignmentEngine, CvRuntime, EngineSettings


log = get_logger("aligner.pipeline")

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp", ".bmp", ".tif", ".tiff")


def _collect_targets(paths: Sequence[str], master: Path) -> List[Path]:
    """Files as given; directories expanded to their images (sorted), master excluded."""
    out: List[Path] = []
    for p in map(Path, paths):
        if p.is_dir():
            out.extend(sorted(q for q in p.iterdir() if q.suffix.lower() in IMAGE_SUFFIXES))
        else:
            out.append(p)
    master = master.resolve()
    return [p for p in out if p.resolve() != master]


def _write_report_row(path: Path, row: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row) + "\n")


def _alignment_config(base: AlignmentConfig, args: argparse.Namespace) -> AlignmentConfig:
    kw = {}
    if args.greedy:
        kw["mode"] = MatchMode.GREEDY
    if args.aspect:
        kw["aspect_ratio"] = AspectRatio.parse(args.aspect)
    if args.black_border:
        kw["border_policy"] = BorderPolicy.OPAQUE_BLACK
    if args.no_refine:
        kw["refinement_enabled"] = False
    if args.perspective:
        kw["perspective_enabled"] = True
    return base.with_overrides(**kw) if kw else base


def write_outputs(report: BatchReport, out_dir: Path, report_path: Path) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    rows = [report.master] if report.master is not None else []
    for r in rows + report.results:
        stem = Path(r.image_id).stem
        RasterImage(r.processed_image, image_id=r.image_id).write(out_dir / f"{stem}_aligned.png")
        RasterImage(r.debug_image, image_id=r.image_id).write(out_dir / f"{stem}_debug.png")
        _write_report_row(report_path, {"ts": iso_now_ms(), "status": "ok", **r.to_meta()})
    for f in report.failures:
        _write_report_row(report_path, {"ts": iso_now_ms(), "status": "failed", **f.to_dict()})
    for o in report.ensemble:
        _write_report_row(report_path, {"ts": iso_now_ms(), "status": "ensemble", **o.to_dict()})


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Align a batch of photos onto a master frame")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    ap.add_argument("--master", required=True, help="Master image path")
    ap.add_argument("--targets", required=True, nargs="+", help="Target image files and/or directories")
    ap.add_argument("--out", required=True, help="Output directory")
    ap.add_argument("--greedy", action="store_true", help="Looser ratio test, lower match floor")
    ap.add_argument("--aspect", default=None, help="Output aspect ratio W:H (e.g. 9:16)")
    ap.add_argument("--black-border", action="store_true", help="Opaque black padding instead of mirror+feather")
    ap.add_argument("--no-refine", action="store_true", help="Skip the second-pass refinement")
    ap.add_argument("--perspective", action="store_true", help="Enable the projective model for every target")
    ap.add_argument("--simple", action="store_true", help="Similarity-only matching for every target")
    ap.add_argument("--ensemble", action=argparse.BooleanOptionalAction, default=None,
                    help="Golden-template correction pass (default from config)")
    ap.add_argument("--classify", action="store_true", help="Decide perspective per image with the classifier")
    ap.add_argument("--workers", type=int, default=None)
    args = ap.parse_args(argv)

    try:
        P = load_config(args.config)
        setup_logging(os.environ.get("FRAMELOCK_LOG_LEVEL") or P.get("logging", {}).get("level", "INFO"), force=True)
        settings = EngineSettings.from_config(P)
        config = _alignment_config(settings.alignment, args)
    except ConfigError as e:
        log.error("invalid configuration", extra={"extra": {"error": str(e)}})
        return 2

    batch_cfg = P.get("batch", {})
    if args.workers is not None:
        batch_cfg["workers"] = args.workers
    if args.classify:
        batch_cfg["classify_perspective"] = True
    ensemble = bool(batch_cfg.get("ensemble", True)) if args.ensemble is None else args.ensemble

    engine = AlignmentEngine(CvRuntime.initialize(), settings)
    runner = BatchRunner.from_config(engine, P)

    master_path = Path(args.master)
    master = RasterImage.from_file(master_path)
    items = [
        BatchItem(RasterImage.from_file(p), simple_match=args.simple)
        for p in _collect_targets(args.targets, master_path)
    ]

    out_dir = Path(args.out)
    report_path = out_dir / Path(P.get("logging", {}).get("report_file", "report.jsonl")).name

    def progress(done: int, total: int, image_id: str) -> None:
        log.info("progress", extra={"extra": {"done": done, "total": total, "image": image_id}})

    try:
        report = runner.run(master, items, config, ensemble=ensemble, progress=progress)
    except AlignmentError as e:
        log.error("batch aborted", extra={"extra": {"image": e.image_id, "reason": e.reason}})
        return 1

    write_outputs(report, out_dir, report_path)
    log.info("batch written", extra={"extra": {"out": str(out_dir), **report.summary()}})
    return 1 if report.failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
