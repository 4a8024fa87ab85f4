"""
FrameLock alignment engine

This package provides:
- AKAZE feature extraction (CLAHE-conditioned) and Hamming ratio matching
- Similarity / Affine / Projective estimation with RANSAC and local fallbacks
- Automatic model selection by reprojection RMS, with second-pass refinement
- Warp-and-pad compositing onto an aspect-ratio canvas (mirror+feather or opaque black)
- Golden-template ensemble correction and a frontal/perspective classifier
- A batch runner over a worker pool and a command-line pipeline

Entry point:
    python -m aligner.pipeline --config config/params.yaml --master M.png --targets shots/ --out out/
"""
from .engine import AlignmentEngine, AlignmentResult, CvRuntime, EngineSettings
from .batch import BatchItem, BatchReport, BatchRunner

__all__ = [
    "AlignmentEngine",
    "AlignmentResult",
    "CvRuntime",
    "EngineSettings",
    "BatchItem",
    "BatchReport",
    "BatchRunner",
]
