"""
Unit tests for feature extraction and matching
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import FeatureExtractionError, InsufficientMatchesError
from common.types import MatchMode
from aligner.features import (
    FeatureExtractor,
    FeatureSet,
    Match,
    Matcher,
    MatchingSettings,
    MatchPolicy,
    draw_matches,
    paired_points,
)
from aligner.preprocess import limit_size, to_gray_u8
from tests.synthetic import random_points, synthetic_feature_sets, textured_image


class TestFeatureExtractor:
    """CLAHE + AKAZE extraction"""

    @pytest.mark.parametrize("channels", [1, 3, 4])
    def test_extracts_from_any_layout(self, channels):
        fs = FeatureExtractor().extract(textured_image(400, 300, seed=3, channels=channels))
        assert len(fs) > 20
        assert fs.descriptors.shape[0] == len(fs.keypoints)
        assert fs.image_size == (400, 300)
        assert fs.points.shape == (len(fs), 2)

    def test_blank_image_raises(self):
        with pytest.raises(FeatureExtractionError):
            FeatureExtractor().extract(np.full((120, 160), 200, dtype=np.uint8), label="blank")

    def test_from_config(self):
        ex = FeatureExtractor.from_config({"clahe_clip": 3.0, "clahe_grid": [4, 4], "akaze_threshold": 0.002})
        assert ex.clahe_grid == (4, 4)
        assert ex.akaze_threshold == pytest.approx(0.002)


class TestFeatureSet:
    """Immutability and index alignment"""

    def test_count_mismatch_rejected(self):
        with pytest.raises(ValueError):
            FeatureSet.from_points([(1.0, 2.0)], np.zeros((2, 61), dtype=np.uint8), (10, 10))

    def test_descriptors_read_only(self):
        fs = FeatureSet.from_points([(1.0, 2.0)], np.zeros((1, 61), dtype=np.uint8), (10, 10))
        with pytest.raises(ValueError):
            fs.descriptors[0, 0] = 1


class TestMatchPolicies:
    """Ratio/floor table"""

    def test_policy_table(self):
        s = MatchingSettings()
        assert s.policy(MatchMode.GREEDY, robust=False).min_matches == 4
        assert s.policy(MatchMode.GREEDY, robust=True).ratio == pytest.approx(0.85)
        assert s.policy(MatchMode.STRICT, robust=False).min_matches == 10
        strict = s.policy(MatchMode.STRICT, robust=True)
        assert (strict.ratio, strict.min_matches, strict.rerank) == (pytest.approx(0.80), 8, True)

    def test_top_k(self):
        assert MatchPolicy(0.8, 8).top_k == 30
        assert MatchPolicy(0.8, 20).top_k == 40

    def test_from_config_overrides(self):
        s = MatchingSettings.from_config({"robust": {"ratio": 0.7, "min_matches": 12}})
        assert s.robust == (0.7, 12)
        assert s.greedy == (0.85, 4)


class TestMatcher:
    """KNN ratio matching"""

    def test_identical_descriptors_match(self):
        pts = random_points(20, seed=1)
        tfs, mfs = synthetic_feature_sets(pts, pts + 5.0)
        matches = Matcher().match(tfs, mfs, MatchPolicy(0.8, 8))
        assert len(matches) == 20
        assert all(m.query_idx == m.train_idx and m.distance == 0 for m in matches)

    def test_below_floor_reports_counts(self):
        pts = random_points(3, seed=2)
        tfs, mfs = synthetic_feature_sets(pts, pts)
        with pytest.raises(InsufficientMatchesError) as exc:
            Matcher().match(tfs, mfs, MatchingSettings().policy(MatchMode.STRICT, robust=True))
        assert (exc.value.found, exc.value.required) == (3, 8)
        assert "3/8" in str(exc.value)

    def test_rerank_caps_to_top_k(self):
        pts = random_points(50, seed=4)
        tfs, mfs = synthetic_feature_sets(pts, pts)
        matches = Matcher().match(tfs, mfs, MatchPolicy(0.8, 8, rerank=True))
        assert len(matches) == 30

    def test_center_weighting_keeps_central_cluster(self):
        # 10 points near the centre, 30 near the corners
        rng = np.random.default_rng(5)
        centre = rng.uniform([380, 280], [420, 320], (10, 2))
        corners = rng.uniform([0, 0], [120, 90], (30, 2))
        pts = np.vstack([centre, corners])
        tfs, mfs = synthetic_feature_sets(pts, pts, image_size=(800, 600))
        matches = Matcher(center_keep_fraction=0.25).match(tfs, mfs, MatchPolicy(0.8, 8), center_weighted=True)
        assert len(matches) == 10
        assert {m.query_idx for m in matches} == set(range(10))

    def test_center_weighting_not_triggered_near_floor(self):
        pts = random_points(10, seed=6)
        tfs, mfs = synthetic_feature_sets(pts, pts)
        matches = Matcher().match(tfs, mfs, MatchPolicy(0.8, 8), center_weighted=True)
        assert len(matches) == 10

    def test_empty_descriptors(self):
        assert Matcher().knn_ratio(np.zeros((0, 61), np.uint8), np.zeros((5, 61), np.uint8), 0.8) == []

    def test_paired_points(self):
        pts = random_points(5, seed=7)
        tfs, mfs = synthetic_feature_sets(pts, pts * 2.0)
        src, dst = paired_points(tfs, mfs, [Match(1, 1, 0.0), Match(3, 3, 0.0)])
        np.testing.assert_allclose(src, pts[[1, 3]], atol=1e-3)
        np.testing.assert_allclose(dst, pts[[1, 3]] * 2.0, atol=1e-3)


class TestDebugDrawing:
    """Side-by-side match visualisation"""

    def test_draw_matches_canvas(self):
        img = textured_image(200, 150, seed=8)
        fs = FeatureExtractor().extract(img)
        matches = [Match(i, i, 0.0) for i in range(min(10, len(fs)))]
        out = draw_matches(img, fs, to_gray_u8(img), fs, matches, np.ones(len(matches), dtype=bool))
        assert out.shape == (150, 400, 3)


class TestPreprocess:
    """Conditioning helpers"""

    def test_limit_size(self):
        img = np.zeros((1000, 2000), dtype=np.uint8)
        small, s = limit_size(img, 500)
        assert small.shape == (250, 500)
        assert s == pytest.approx(0.25)
        same, s1 = limit_size(img, 4000)
        assert same is img and s1 == 1.0
