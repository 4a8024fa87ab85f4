from __future__ import annotations
"""
Warp-and-pad compositing onto an aspect-ratio canvas.

The validity mask (255 = warped target content, 0 = synthetic border) travels
with the image so the feathering step only ever touches border pixels.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np

from common.errors import CompositionError
from common.logging_setup import get_logger
from common.types import AspectRatio, BorderPolicy
from common.utils import odd_kernel, round_half_up
from aligner.transforms import Transform, warp_image


log = get_logger("aligner.composite")

Padding = Tuple[int, int, int, int]  # top, bottom, left, right


@dataclass(slots=True)
class Composite:
    image: np.ndarray = field(repr=False)
    mask: np.ndarray = field(repr=False)
    padding: Padding = (0, 0, 0, 0)

    @property
    def size(self) -> Tuple[int, int]:
        return (int(self.image.shape[1]), int(self.image.shape[0]))


def compute_canvas(width: int, height: int, aspect: AspectRatio) -> Tuple[int, int, Padding]:
    """
    Grow the shorter dimension of (width, height) to match `aspect`.
    Padding is centred: floor(pad/2) before, the remainder after.
    """
    target = aspect.value
    if width / float(height) > target:
        final_w, final_h = width, round_half_up(width / target)
    else:
        final_w, final_h = round_half_up(height * target), height
    pad_x, pad_y = max(0, final_w - width), max(0, final_h - height)
    left, top = pad_x // 2, pad_y // 2
    return width + pad_x, height + pad_y, (top, pad_y - top, left, pad_x - left)


def _black(channels: int):
    if channels == 4:
        return (0, 0, 0, 255)
    if channels == 3:
        return (0, 0, 0)
    return 0


@dataclass
class Compositor:
    blur_ksize: int = 35

    @classmethod
    def from_config(cls, d: Optional[Dict[str, Any]]) -> "Compositor":
        return cls(blur_ksize=int((d or {}).get("blur_ksize", 35)))

    def warp(
        self,
        target: np.ndarray,
        transform: Transform,
        canvas_size: Tuple[int, int],
        policy: BorderPolicy,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Target warped into the master canvas plus its validity mask."""
        channels = 1 if target.ndim == 2 else target.shape[2]
        if policy is BorderPolicy.OPAQUE_BLACK:
            warped = warp_image(target, transform, canvas_size, border_mode=cv2.BORDER_CONSTANT,
                                border_value=_black(channels))
        else:
            warped = warp_image(target, transform, canvas_size, border_mode=cv2.BORDER_REFLECT_101)
        ones = np.full(target.shape[:2], 255, dtype=np.uint8)
        mask = warp_image(ones, transform, canvas_size, interpolation=cv2.INTER_NEAREST,
                          border_mode=cv2.BORDER_CONSTANT, border_value=0)
        if warped.shape[:2] != mask.shape[:2]:
            raise CompositionError(f"warped image {warped.shape[:2]} and mask {mask.shape[:2]} differ")
        return warped, mask

    def pad(
        self,
        warped: np.ndarray,
        mask: np.ndarray,
        aspect: AspectRatio,
        policy: BorderPolicy,
    ) -> Tuple[np.ndarray, np.ndarray, Padding]:
        h, w = warped.shape[:2]
        final_w, final_h, (top, bottom, left, right) = compute_canvas(w, h, aspect)
        channels = 1 if warped.ndim == 2 else warped.shape[2]
        if policy is BorderPolicy.OPAQUE_BLACK:
            padded = cv2.copyMakeBorder(warped, top, bottom, left, right, cv2.BORDER_CONSTANT,
                                        value=_black(channels))
        else:
            padded = cv2.copyMakeBorder(warped, top, bottom, left, right, cv2.BORDER_REFLECT_101)
        pmask = cv2.copyMakeBorder(mask, top, bottom, left, right, cv2.BORDER_CONSTANT, value=0)
        if padded.shape[:2] != (final_h, final_w) or pmask.shape[:2] != (final_h, final_w):
            raise CompositionError(
                f"padded size {padded.shape[1]}x{padded.shape[0]} != canvas {final_w}x{final_h}"
            )
        return padded, pmask, (top, bottom, left, right)

    def feather(self, padded: np.ndarray, pmask: np.ndarray) -> np.ndarray:
        """Blurred pixels wherever the mask is 0; content pixels untouched."""
        if padded.shape[:2] != pmask.shape[:2]:
            raise CompositionError("image and mask sizes differ")
        k = odd_kernel(self.blur_ksize)
        blurred = cv2.GaussianBlur(padded, (k, k), 0)
        out = padded.copy()
        border = pmask == 0
        out[border] = blurred[border]
        return out

    def composite(
        self,
        target: np.ndarray,
        transform: Transform,
        canvas_size: Tuple[int, int],
        aspect: AspectRatio,
        policy: BorderPolicy = BorderPolicy.MIRROR_FEATHER,
    ) -> Composite:
        warped, mask = self.warp(target, transform, canvas_size, policy)
        padded, pmask, padding = self.pad(warped, mask, aspect, policy)
        image = padded if policy is BorderPolicy.OPAQUE_BLACK else self.feather(padded, pmask)
        log.debug("composited", extra={"extra": {"canvas": [int(image.shape[1]), int(image.shape[0])],
                                                  "padding": list(padding), "policy": policy.value}})
        return Composite(image=image, mask=pmask, padding=padding)
