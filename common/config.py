"""
Configuration loading.

`config/params.yaml` is deep-merged over DEFAULTS, so a partial file (or no
file at all) still yields a complete configuration dict.
"""
from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from common.errors import ConfigError


DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "logging": {"level": "INFO", "report_file": "report.jsonl"},
    "alignment": {
        "mode": "strict",
        "refinement_enabled": True,
        "perspective_enabled": False,
        "simple_match_forced": False,
        "aspect_ratio": "9:16",
        "border_policy": "mirror+feather",
        "center_weighted": True,
    },
    "features": {
        "clahe_clip": 2.0,
        "clahe_grid": [8, 8],
        "akaze_threshold": 0.001,
    },
    "matching": {
        "greedy": {"ratio": 0.85, "min_matches": 4},
        "simple": {"ratio": 0.75, "min_matches": 10},
        "robust": {"ratio": 0.80, "min_matches": 8},
        "center_keep_fraction": 0.4,
        "center_trigger": 1.5,
        "top_k_min": 30,
    },
    "estimation": {
        "ransac_px": 5.0,
        "fast_ransac_px": 3.0,
        "min_inlier_ratio": 0.30,
        "max_iters": 2000,
        "confidence": 0.995,
    },
    "compositor": {"blur_ksize": 35},
    "classifier": {
        "canny_low": 50,
        "canny_high": 150,
        "hough_threshold": 50,
        "min_line_frac": 0.08,
        "max_line_gap": 10,
        "max_side": 1024,
    },
    "batch": {
        "workers": 4,
        "ensemble": True,
        "classify_perspective": False,
    },
    "service": {"host": "0.0.0.0", "port": 8000, "max_upload_mb": 25},
}


def deep_merge(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def load_config(path: Union[str, Path, None] = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    if path is None or not Path(path).exists():
        return copy.deepcopy(DEFAULTS)
    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"could not parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return deep_merge(DEFAULTS, data)
