from __future__ import annotations

from typing import Dict, Optional


class AlignmentError(Exception):
    """
    Base class for per-image alignment failures.

    `image_id` is filled in by whoever knows which image was being processed
    (usually the engine), so the batch can report it back to the user.
    """

    def __init__(self, message: str, *, image_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.image_id = image_id

    @property
    def reason(self) -> str:
        return str(self.args[0]) if self.args else self.__class__.__name__

    def with_image(self, image_id: Optional[str]) -> "AlignmentError":
        if self.image_id is None:
            self.image_id = image_id
        return self


class FeatureExtractionError(AlignmentError):
    """No descriptors could be computed (blank or degenerate image)."""


class InsufficientMatchesError(AlignmentError):
    """Ratio-test survivors below the mode floor. Retry in greedy mode."""

    def __init__(self, found: int, required: int, *, image_id: Optional[str] = None) -> None:
        super().__init__(f"Not enough good matches found ({found}/{required}).", image_id=image_id)
        self.found = int(found)
        self.required = int(required)


class TransformEstimationError(AlignmentError):
    def __init__(self, kind: str, reason: str, *, image_id: Optional[str] = None) -> None:
        super().__init__(f"{kind} estimation failed: {reason}", image_id=image_id)
        self.kind = kind


class NoValidAlignmentError(AlignmentError):
    """Every candidate model failed for this image."""

    def __init__(self, reasons: Dict[str, str], *, image_id: Optional[str] = None) -> None:
        detail = "; ".join(f"{k}: {v}" for k, v in reasons.items()) or "no candidates ran"
        super().__init__(f"No valid alignment found ({detail})", image_id=image_id)
        self.reasons = dict(reasons)


class CompositionError(AlignmentError):
    """Warp/pad size mismatch. Indicates a bug, not bad input."""


class RuntimeNotReadyError(RuntimeError):
    pass


class ConfigError(ValueError):
    pass
