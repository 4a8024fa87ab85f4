from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import cv2
import numpy as np

from common.errors import ConfigError


class MatchMode(str, Enum):
    GREEDY = "greedy"
    STRICT = "strict"


class BorderPolicy(str, Enum):
    MIRROR_FEATHER = "mirror+feather"
    OPAQUE_BLACK = "opaque-black"


def _parse_enum(cls, value):
    if isinstance(value, cls):
        return value
    try:
        return cls(str(value).lower())
    except ValueError:
        choices = ", ".join(m.value for m in cls)
        raise ConfigError(f"invalid {cls.__name__} {value!r} (expected one of: {choices})") from None


@dataclass(frozen=True, slots=True)
class AspectRatio:
    """Output canvas ratio, written W:H (e.g. 9:16)."""
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ConfigError(f"aspect ratio terms must be positive, got {self.width}:{self.height}")

    @classmethod
    def parse(cls, text: Union[str, "AspectRatio"]) -> "AspectRatio":
        if isinstance(text, AspectRatio):
            return text
        parts = str(text).replace("x", ":").split(":")
        if len(parts) != 2:
            raise ConfigError(f"aspect ratio must look like W:H, got {text!r}")
        try:
            return cls(int(parts[0]), int(parts[1]))
        except ValueError:
            raise ConfigError(f"aspect ratio must look like W:H, got {text!r}") from None

    @property
    def value(self) -> float:
        return self.width / float(self.height)

    def __str__(self) -> str:
        return f"{self.width}:{self.height}"


@dataclass(slots=True)
class RasterImage:
    """
    Decoded image owned by the engine.

    Attributes:
        pixels: np.ndarray of shape (H,W), (H,W,3) BGR or (H,W,4) BGRA, dtype uint8.
                A private copy is taken and marked read-only.
        image_id: caller's identity for the image (file name, upload id, ...).
    """
    pixels: np.ndarray = field(repr=False)
    image_id: str = "image"

    def __post_init__(self) -> None:
        if not isinstance(self.pixels, np.ndarray):
            raise TypeError("pixels must be a numpy ndarray")
        if self.pixels.ndim not in (2, 3):
            raise ValueError("pixels must be 2D (gray) or 3D (BGR/BGRA)")
        if self.pixels.ndim == 3 and self.pixels.shape[2] not in (1, 3, 4):
            raise ValueError("pixels must have 1, 3 or 4 channels")
        if self.pixels.shape[0] == 0 or self.pixels.shape[1] == 0:
            raise ValueError("image is empty")
        px = np.array(self.pixels, dtype=np.uint8, copy=True)
        px.flags.writeable = False
        self.pixels = px

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height), the order OpenCV wants for dsize."""
        return (self.width, self.height)

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    @classmethod
    def from_bytes(cls, data: bytes, image_id: str = "image") -> "RasterImage":
        arr = np.frombuffer(data, dtype=np.uint8)
        img = cv2.imdecode(arr, cv2.IMREAD_UNCHANGED) if arr.size else None
        if img is None:
            raise ValueError(f"could not decode image {image_id!r}")
        return cls(pixels=img, image_id=image_id)

    @classmethod
    def from_file(cls, path: Union[str, Path], image_id: Optional[str] = None) -> "RasterImage":
        p = Path(path)
        return cls.from_bytes(p.read_bytes(), image_id=image_id or p.name)

    def to_png_bytes(self) -> bytes:
        ok, buf = cv2.imencode(".png", self.pixels)
        if not ok:
            raise ValueError(f"could not encode image {self.image_id!r}")
        return buf.tobytes()

    def write(self, path: Union[str, Path]) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(self.to_png_bytes())
        return p

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without pixels (safe to log/serialize)."""
        return {"image_id": self.image_id, "width": self.width, "height": self.height, "channels": self.channels}


@dataclass(frozen=True, slots=True)
class AlignmentConfig:
    """
    Per-call alignment switches exchanged with the host application.

    simple_match_forced restricts selection to the Similarity model (frontal
    captures); perspective_enabled adds the Projective model.
    """
    mode: MatchMode = MatchMode.STRICT
    refinement_enabled: bool = True
    perspective_enabled: bool = False
    simple_match_forced: bool = False
    aspect_ratio: AspectRatio = AspectRatio(9, 16)
    border_policy: BorderPolicy = BorderPolicy.MIRROR_FEATHER
    center_weighted: bool = True

    @property
    def greedy(self) -> bool:
        return self.mode is MatchMode.GREEDY

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "AlignmentConfig":
        d = dict(d or {})
        base = cls()
        return cls(
            mode=_parse_enum(MatchMode, d.get("mode", base.mode)),
            refinement_enabled=bool(d.get("refinement_enabled", base.refinement_enabled)),
            perspective_enabled=bool(d.get("perspective_enabled", base.perspective_enabled)),
            simple_match_forced=bool(d.get("simple_match_forced", base.simple_match_forced)),
            aspect_ratio=AspectRatio.parse(d.get("aspect_ratio", base.aspect_ratio)),
            border_policy=_parse_enum(BorderPolicy, d.get("border_policy", base.border_policy)),
            center_weighted=bool(d.get("center_weighted", base.center_weighted)),
        )

    def with_overrides(self, **kw: Any) -> "AlignmentConfig":
        return replace(self, **kw)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "refinement_enabled": self.refinement_enabled,
            "perspective_enabled": self.perspective_enabled,
            "simple_match_forced": self.simple_match_forced,
            "aspect_ratio": str(self.aspect_ratio),
            "border_policy": self.border_policy.value,
            "center_weighted": self.center_weighted,
        }
