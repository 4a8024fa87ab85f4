"""
Unit tests for configuration loading, shared types, logging and helpers
"""

import json
import logging
import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.config import DEFAULTS, deep_merge, load_config
from common.errors import ConfigError, InsufficientMatchesError, NoValidAlignmentError
from common.logging_setup import JsonFormatter
from common.types import AlignmentConfig, AspectRatio, BorderPolicy, MatchMode, RasterImage
from common.utils import RunningStats, is_degenerate, odd_kernel, round_half_up


class TestLoadConfig:
    """YAML merged over defaults"""

    def test_missing_file_gives_defaults(self, tmp_path):
        P = load_config(tmp_path / "absent.yaml")
        assert P == DEFAULTS
        P["matching"]["robust"]["ratio"] = 0.1
        assert DEFAULTS["matching"]["robust"]["ratio"] == 0.80

    def test_partial_file_is_merged(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("matching:\n  robust: {ratio: 0.7}\nbatch:\n  workers: 2\n")
        P = load_config(path)
        assert P["matching"]["robust"] == {"ratio": 0.7, "min_matches": 8}
        assert P["batch"]["workers"] == 2
        assert P["estimation"]["ransac_px"] == 5.0

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("matching: [1, 2\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_shipped_params_match_defaults(self):
        P = load_config(os.path.join(project_root, "config", "params.yaml"))
        assert P == DEFAULTS

    def test_deep_merge_replaces_leaves(self):
        out = deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}, "d": 4})
        assert out == {"a": {"b": 1, "c": 3}, "d": 4}


class TestAlignmentConfig:
    """Per-call switches"""

    def test_defaults(self):
        cfg = AlignmentConfig()
        assert cfg.mode is MatchMode.STRICT
        assert cfg.refinement_enabled and not cfg.perspective_enabled
        assert cfg.aspect_ratio == AspectRatio(9, 16)
        assert cfg.border_policy is BorderPolicy.MIRROR_FEATHER

    def test_from_dict(self):
        cfg = AlignmentConfig.from_dict({"mode": "GREEDY", "aspect_ratio": "1:1", "border_policy": "opaque-black"})
        assert cfg.greedy
        assert cfg.aspect_ratio.value == 1.0
        assert cfg.border_policy is BorderPolicy.OPAQUE_BLACK

    def test_dict_round_trip(self):
        cfg = AlignmentConfig(mode=MatchMode.GREEDY, perspective_enabled=True)
        assert AlignmentConfig.from_dict(cfg.to_dict()) == cfg

    def test_invalid_mode(self):
        with pytest.raises(ConfigError):
            AlignmentConfig.from_dict({"mode": "sloppy"})


class TestAspectRatio:
    """W:H parsing"""

    @pytest.mark.parametrize("text,expected", [("9:16", (9, 16)), ("16x9", (16, 9)), ("1:1", (1, 1))])
    def test_parse(self, text, expected):
        a = AspectRatio.parse(text)
        assert (a.width, a.height) == expected

    @pytest.mark.parametrize("text", ["abc", "9:16:1", "0:5", "a:b"])
    def test_invalid(self, text):
        with pytest.raises(ConfigError):
            AspectRatio.parse(text)


class TestRasterImage:
    """Owned, read-only pixel buffers"""

    def test_private_read_only_copy(self):
        px = np.zeros((4, 5, 3), dtype=np.uint8)
        img = RasterImage(px, image_id="a")
        px[0, 0, 0] = 9
        assert img.pixels[0, 0, 0] == 0
        with pytest.raises(ValueError):
            img.pixels[0, 0, 0] = 1
        assert img.size == (5, 4)
        assert img.channels == 3

    def test_rejects_bad_layouts(self):
        with pytest.raises(ValueError):
            RasterImage(np.zeros((4, 5, 2), dtype=np.uint8))
        with pytest.raises(ValueError):
            RasterImage(np.zeros((0, 5), dtype=np.uint8))

    def test_undecodable_bytes(self):
        with pytest.raises(ValueError):
            RasterImage.from_bytes(b"not an image")
        with pytest.raises(ValueError):
            RasterImage.from_bytes(b"")

    def test_png_bytes(self, tmp_path):
        px = np.random.default_rng(3).integers(0, 255, (20, 30, 4), dtype=np.uint8)
        img = RasterImage(px, image_id="rgba")
        path = img.write(tmp_path / "out" / "rgba.png")
        back = RasterImage.from_file(path)
        assert back.image_id == "rgba.png"
        np.testing.assert_array_equal(back.pixels, px)
        assert cv2.imdecode(np.frombuffer(img.to_png_bytes(), np.uint8), cv2.IMREAD_UNCHANGED).shape == (20, 30, 4)


class TestErrors:
    """Error messages and tagging"""

    def test_insufficient_matches_message(self):
        e = InsufficientMatchesError(3, 8)
        assert e.reason == "Not enough good matches found (3/8)."
        assert e.with_image("t.png").image_id == "t.png"
        assert e.with_image("other.png").image_id == "t.png"

    def test_no_valid_alignment_lists_reasons(self):
        e = NoValidAlignmentError({"affine": "no model", "similarity": "degenerate"})
        assert "affine: no model" in e.reason
        assert set(e.reasons) == {"affine", "similarity"}


class TestLogging:
    """JSON log lines"""

    def test_json_formatter_includes_extra(self):
        rec = logging.LogRecord("aligner.select", logging.INFO, __file__, 1, "selected", None, None)
        rec.extra = {"kind": "affine", "rms_px": 0.5}
        payload = json.loads(JsonFormatter().format(rec))
        assert payload["lvl"] == "INFO"
        assert payload["name"] == "aligner.select"
        assert payload["msg"] == "selected"
        assert payload["extra"] == {"kind": "affine", "rms_px": 0.5}


class TestUtils:
    """Small numeric helpers"""

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(1422.22) == 1422

    def test_odd_kernel(self):
        assert odd_kernel(34) == 35
        assert odd_kernel(35) == 35
        assert odd_kernel(0) == 1

    def test_is_degenerate(self):
        x = np.linspace(0.0, 100.0, 10)
        assert is_degenerate(np.stack([x, 3.0 * x], axis=1))
        assert not is_degenerate(np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]]))

    def test_running_stats(self):
        s = RunningStats()
        for v in (1.0, 2.0, 3.0, 4.0):
            s.add(v)
        assert s.mean == pytest.approx(2.5)
        assert s.std == pytest.approx(np.std([1, 2, 3, 4], ddof=1))
