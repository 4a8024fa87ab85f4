from __future__ import annotations
"""
Feature extraction & matching.

- FeatureExtractor: luminance + CLAHE + AKAZE -> FeatureSet
- Matcher: KNN Hamming matcher + Lowe ratio, mode-dependent floors,
  distance re-ranking and center-weighted disambiguation
- Debug visualisation of matched pairs
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.errors import FeatureExtractionError, InsufficientMatchesError
from common.logging_setup import get_logger
from common.types import MatchMode
from aligner.preprocess import prepare_for_features


log = get_logger("aligner.features")


# -----------------------------
# Data
# -----------------------------

@dataclass(frozen=True, eq=False)
class FeatureSet:
    """
    Keypoints + index-aligned binary descriptors of one image.

    image_size is (width, height) of the image the features were taken from.
    """
    keypoints: Tuple[cv2.KeyPoint, ...]
    descriptors: np.ndarray = field(repr=False)
    image_size: Tuple[int, int]

    def __post_init__(self) -> None:
        kps = tuple(self.keypoints)
        des = np.ascontiguousarray(self.descriptors, dtype=np.uint8)
        if des.ndim != 2:
            raise ValueError("descriptors must be a 2D (N, bytes) array")
        if len(kps) != des.shape[0]:
            raise ValueError(f"{len(kps)} keypoints but {des.shape[0]} descriptors")
        des.flags.writeable = False
        pts = np.array([kp.pt for kp in kps], dtype=np.float64).reshape(-1, 2)
        pts.flags.writeable = False
        object.__setattr__(self, "keypoints", kps)
        object.__setattr__(self, "descriptors", des)
        object.__setattr__(self, "image_size", (int(self.image_size[0]), int(self.image_size[1])))
        object.__setattr__(self, "_points", pts)

    @property
    def points(self) -> np.ndarray:
        return self._points  # type: ignore[attr-defined]

    def __len__(self) -> int:
        return len(self.keypoints)

    @classmethod
    def from_points(
        cls,
        points: Sequence[Tuple[float, float]],
        descriptors: np.ndarray,
        image_size: Tuple[int, int],
        kp_size: float = 8.0,
    ) -> "FeatureSet":
        """Build a set from raw coordinates (synthetic correspondences, replays)."""
        kps = tuple(cv2.KeyPoint(float(x), float(y), float(kp_size)) for x, y in points)
        return cls(keypoints=kps, descriptors=descriptors, image_size=image_size)


@dataclass(frozen=True, slots=True)
class Match:
    """query_idx indexes the target's keypoints, train_idx the master's."""
    query_idx: int
    train_idx: int
    distance: float

    @classmethod
    def from_dmatch(cls, m: cv2.DMatch) -> "Match":
        return cls(int(m.queryIdx), int(m.trainIdx), float(m.distance))

    def to_dmatch(self) -> cv2.DMatch:
        return cv2.DMatch(self.query_idx, self.train_idx, float(self.distance))


@dataclass(frozen=True, slots=True)
class MatchPolicy:
    ratio: float
    min_matches: int
    rerank: bool = False
    top_k_min: int = 30

    @property
    def top_k(self) -> int:
        return max(2 * self.min_matches, self.top_k_min)


@dataclass
class MatchingSettings:
    """
    Ratio/floor per path. "simple" backs the similarity-only path, "robust"
    the automatic model selection; greedy mode overrides both.
    """
    greedy: Tuple[float, int] = (0.85, 4)
    simple: Tuple[float, int] = (0.75, 10)
    robust: Tuple[float, int] = (0.80, 8)
    center_keep_fraction: float = 0.4
    center_trigger: float = 1.5
    top_k_min: int = 30

    @classmethod
    def from_config(cls, d: Optional[Dict[str, Any]]) -> "MatchingSettings":
        d = d or {}
        base = cls()

        def pair(name: str, default: Tuple[float, int]) -> Tuple[float, int]:
            sec = d.get(name) or {}
            return (float(sec.get("ratio", default[0])), int(sec.get("min_matches", default[1])))

        return cls(
            greedy=pair("greedy", base.greedy),
            simple=pair("simple", base.simple),
            robust=pair("robust", base.robust),
            center_keep_fraction=float(d.get("center_keep_fraction", base.center_keep_fraction)),
            center_trigger=float(d.get("center_trigger", base.center_trigger)),
            top_k_min=int(d.get("top_k_min", base.top_k_min)),
        )

    def policy(self, mode: MatchMode, *, robust: bool) -> MatchPolicy:
        if mode is MatchMode.GREEDY:
            ratio, floor = self.greedy
        else:
            ratio, floor = self.robust if robust else self.simple
        return MatchPolicy(ratio=ratio, min_matches=floor, rerank=robust, top_k_min=self.top_k_min)


# -----------------------------
# Extraction
# -----------------------------

@dataclass
class FeatureExtractor:
    clahe_clip: float = 2.0
    clahe_grid: Tuple[int, int] = (8, 8)
    akaze_threshold: float = 0.001

    @classmethod
    def from_config(cls, d: Optional[Dict[str, Any]]) -> "FeatureExtractor":
        d = d or {}
        grid = d.get("clahe_grid", (8, 8))
        return cls(
            clahe_clip=float(d.get("clahe_clip", 2.0)),
            clahe_grid=(int(grid[0]), int(grid[1])),
            akaze_threshold=float(d.get("akaze_threshold", 0.001)),
        )

    def _detector(self):
        # one detector per call: cv2 Feature2D instances are not shared across worker threads
        return cv2.AKAZE_create(threshold=float(self.akaze_threshold))

    def extract(self, pixels: np.ndarray, label: str = "image") -> FeatureSet:
        gray = prepare_for_features(pixels, clahe_clip=self.clahe_clip, tile_grid=self.clahe_grid)
        kps, des = self._detector().detectAndCompute(gray, None)
        if des is None or len(kps) == 0:
            raise FeatureExtractionError(f"Could not find features in {label} for alignment.")
        h, w = gray.shape[:2]
        log.debug("features extracted", extra={"extra": {"image": label, "keypoints": len(kps)}})
        return FeatureSet(keypoints=tuple(kps), descriptors=des, image_size=(w, h))


# -----------------------------
# Matching
# -----------------------------

@dataclass
class Matcher:
    center_keep_fraction: float = 0.4
    center_trigger: float = 1.5

    def knn_ratio(self, query_des: np.ndarray, train_des: np.ndarray, ratio: float) -> List[Match]:
        """
        KNN (k=2) Hamming + Lowe ratio. Queries with a single neighbour are dropped.
        """
        if query_des is None or train_des is None or len(query_des) == 0 or len(train_des) == 0:
            return []
        bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        knn = bf.knnMatch(query_des, train_des, k=2)
        good: List[Match] = []
        for pair in knn:
            if len(pair) < 2:
                continue
            m, n = pair[0], pair[1]
            if m.distance < ratio * n.distance:
                good.append(Match.from_dmatch(m))
        return good

    def match(
        self,
        query: FeatureSet,
        reference: FeatureSet,
        policy: MatchPolicy,
        *,
        center_weighted: bool = False,
    ) -> List[Match]:
        """
        Match target (query) descriptors against master (reference) ones.

        Raises InsufficientMatchesError when fewer than policy.min_matches
        survive the ratio test.
        """
        good = self.knn_ratio(query.descriptors, reference.descriptors, policy.ratio)
        log.info(
            "ratio test",
            extra={"extra": {"good": len(good), "required": policy.min_matches, "ratio": policy.ratio,
                             "query_kps": len(query), "reference_kps": len(reference)}},
        )
        if len(good) < policy.min_matches:
            raise InsufficientMatchesError(len(good), policy.min_matches)

        if center_weighted and len(good) > self.center_trigger * policy.min_matches:
            return self._center_cluster(query, good, policy)
        if policy.rerank:
            good = sorted(good, key=lambda m: m.distance)[: policy.top_k]
        return good

    def _center_cluster(self, query: FeatureSet, good: List[Match], policy: MatchPolicy) -> List[Match]:
        """
        Keep the matches whose target keypoints sit nearest the image centre,
        then the best of those by descriptor distance. Picks the centred
        instance when a logo appears several times in one frame.
        """
        pts = query.points[[m.query_idx for m in good]]
        cx, cy = query.image_size[0] / 2.0, query.image_size[1] / 2.0
        dist = np.hypot(pts[:, 0] - cx, pts[:, 1] - cy)
        keep_n = max(policy.min_matches, int(math.ceil(self.center_keep_fraction * len(good))))
        order = np.argsort(dist, kind="stable")[:keep_n]
        cluster = sorted((good[i] for i in order), key=lambda m: m.distance)
        return cluster[: policy.top_k]


def paired_points(
    query: FeatureSet,
    reference: FeatureSet,
    matches: Sequence[Match],
) -> Tuple[np.ndarray, np.ndarray]:
    """(target_pts, master_pts) as (N,2) float64 arrays, index-aligned with matches."""
    if not matches:
        empty = np.zeros((0, 2), dtype=np.float64)
        return empty, empty.copy()
    q = np.fromiter((m.query_idx for m in matches), dtype=np.intp, count=len(matches))
    t = np.fromiter((m.train_idx for m in matches), dtype=np.intp, count=len(matches))
    return query.points[q].copy(), reference.points[t].copy()


# -----------------------------
# Debug visualisation
# -----------------------------

def _to_bgr(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
    if img.shape[2] == 1:
        return cv2.cvtColor(img[:, :, 0], cv2.COLOR_GRAY2BGR)
    return img


def draw_matches(
    target_img: np.ndarray,
    target_fs: FeatureSet,
    master_img: np.ndarray,
    master_fs: FeatureSet,
    matches: Sequence[Match],
    inlier_mask: Optional[np.ndarray] = None,
    max_draw: int = 200,
) -> np.ndarray:
    """
    Target on the left, master on the right, matched pairs joined by lines.
    Inliers green; outliers are hidden when an inlier mask is given.
    """
    dm = [m.to_dmatch() for m in matches[:max_draw]]
    mask_list = None
    if inlier_mask is not None and len(inlier_mask) == len(matches):
        mask_list = [int(bool(v)) for v in np.ravel(inlier_mask)[:max_draw]]
    return cv2.drawMatches(
        _to_bgr(target_img), list(target_fs.keypoints),
        _to_bgr(master_img), list(master_fs.keypoints),
        dm,
        None,
        matchColor=(0, 255, 0),
        singlePointColor=(255, 0, 0),
        matchesMask=mask_list,
        flags=cv2.DrawMatchesFlags_NOT_DRAW_SINGLE_POINTS,
    )
