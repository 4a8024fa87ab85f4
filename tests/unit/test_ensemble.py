"""
Unit tests for the golden-template correction pass
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import TransformEstimationError
from common.types import AlignmentConfig, RasterImage
from aligner.engine import AlignmentEngine, CvRuntime
from aligner.ensemble import EnsembleCorrector, EnsembleOutcome
from tests.synthetic import similarity_matrix, textured_image, warp_target


@pytest.fixture(scope="module")
def engine():
    return AlignmentEngine(CvRuntime.initialize())


@pytest.fixture(scope="module")
def batch(engine):
    master = RasterImage(textured_image(640, 480, seed=81), image_id="master.png")
    target = RasterImage(warp_target(master.pixels, similarity_matrix(2.0, 1.0, 10.0, -6.0)), image_id="t.png")
    master_res = engine.process_image(master, master, is_master=True)
    first = engine.process_image(master, target)
    return master_res, first


class TestEnsembleCorrector:
    """Re-alignment against the aligned master output"""

    def test_successful_correction_is_applied(self, engine, batch):
        master_res, first = batch
        out, outcomes = EnsembleCorrector(engine).correct(
            engine.golden(master_res), master_res.padding, [first], AlignmentConfig()
        )
        o = outcomes[0]
        assert o.corrected
        assert o.first_rms == first.rms_error
        assert o.second_rms is not None and np.isfinite(o.second_rms)
        assert out[0].rms_error == o.second_rms
        assert out[0].processed_image is not first.processed_image
        assert out[0].processed_image.shape == first.processed_image.shape
        # corrected transform still maps target -> master close to the first pass
        pts = np.array([[200.0, 150.0], [320.0, 240.0], [440.0, 330.0]])
        np.testing.assert_allclose(out[0].transform.apply(pts), first.transform.apply(pts), atol=2.0)

    def test_failed_correction_keeps_first_pass(self, engine, batch, monkeypatch):
        master_res, first = batch
        corrector = EnsembleCorrector(engine)

        def fail(*args, **kwargs):
            raise TransformEstimationError("affine", "no model")

        monkeypatch.setattr(corrector, "_correction", fail)
        out, outcomes = corrector.correct(engine.golden(master_res), master_res.padding, [first], AlignmentConfig())
        assert out[0] is first
        assert not outcomes[0].corrected
        assert outcomes[0].second_rms is None
        assert "no model" in outcomes[0].reason

    def test_featureless_golden_keeps_everything(self, engine, batch):
        _, first = batch
        blank = RasterImage(np.full((1138, 640, 3), 50, dtype=np.uint8), image_id="golden")
        out, outcomes = EnsembleCorrector(engine).correct(blank, (0, 0, 0, 0), [first], AlignmentConfig())
        assert out[0] is first
        assert [o.corrected for o in outcomes] == [False]

    def test_empty_batch(self, engine, batch):
        master_res, _ = batch
        assert EnsembleCorrector(engine).correct(engine.golden(master_res), master_res.padding, [],
                                                 AlignmentConfig()) == ([], [])

    def test_outcome_to_dict(self):
        d = EnsembleOutcome("t.png", True, 0.123456, second_rms=0.2).to_dict()
        assert d == {"image_id": "t.png", "corrected": True, "first_rms": 0.1235, "second_rms": 0.2, "reason": None}
