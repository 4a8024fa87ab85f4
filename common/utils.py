from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Tuple

import numpy as np


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def round_half_up(x: float) -> int:
    """Half-up rounding: 2.5 -> 3 (Python's round() would give 2)."""
    return int(math.floor(x + 0.5))


def odd_kernel(k: int) -> int:
    """GaussianBlur wants odd, positive kernel sizes."""
    k = max(1, int(k))
    return k if k % 2 == 1 else k + 1


def as_points(pts: Iterable) -> np.ndarray:
    """Coerce a point list to an (N,2) float64 array."""
    a = np.asarray(pts, dtype=np.float64)
    if a.size == 0:
        return np.zeros((0, 2), dtype=np.float64)
    return a.reshape(-1, 2)


def point_spread(pts: np.ndarray) -> Tuple[float, float]:
    """
    Singular values of the centred point cloud (largest, smallest).
    A near-zero smallest value means the points are (nearly) collinear.
    """
    p = as_points(pts)
    if len(p) < 2:
        return (0.0, 0.0)
    s = np.linalg.svd(p - p.mean(axis=0), compute_uv=False)
    if s.size < 2:
        return (float(s[0]) if s.size else 0.0, 0.0)
    return (float(s[0]), float(s[1]))


def is_degenerate(pts: np.ndarray, rel_tol: float = 1e-3) -> bool:
    big, small = point_spread(pts)
    return big <= 1e-9 or small <= rel_tol * big


@dataclass(slots=True)
class RunningStats:
    """
    Online mean/std using Welford's algorithm.
    """
    n: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def add(self, x: float) -> None:
        self.n += 1
        d = x - self.mean
        self.mean += d / self.n
        d2 = x - self.mean
        self.m2 += d * d2

    @property
    def variance(self) -> float:
        return self.m2 / (self.n - 1) if self.n > 1 else 0.0

    @property
    def std(self) -> float:
        return self.variance ** 0.5


@dataclass(slots=True)
class Stopwatch:
    """Elapsed wall time in ms; used for per-image latency in logs/reports."""
    _t0: float = field(default_factory=time.perf_counter)

    def ms(self) -> int:
        return int(1000.0 * (time.perf_counter() - self._t0))

