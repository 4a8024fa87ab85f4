"""
FrameLock Test Suite

This package contains tests for the FrameLock image alignment engine.

Structure:
- unit/: Unit tests for individual components
- integration/: Batch runner and CLI tests over synthetic scenes
- synthetic.py: Deterministic images and correspondences shared by both
"""
