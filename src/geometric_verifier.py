"""
Geometric Verifier

Rejects false feature matches with the epipolar constraint.

Pipeline:
1. RANSAC over minimal samples of 8 matches
2. Normalized 8-point fundamental matrix per sample (Hartley normalization,
   SVD null vector, rank-2 enforcement)
3. Scoring by symmetric epipolar distance
4. Adaptive stopping once enough trials were drawn for the target confidence
5. Least-squares refit on the winning inlier set

Everything here is a pure function of its inputs and the injected random
generator, so independent verifications may run in parallel.
"""

import math
import sys
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np

import config
from features import FeatureMatch, Keypoint, matched_points


SAMPLE_SIZE = 8  # minimal sample for the 8-point algorithm

RandomSource = Union[np.random.Generator, int, None]


@dataclass(frozen=True)
class RansacConfig:
    max_iterations: int = config.RANSAC_MAX_ITERATIONS
    threshold: float = config.RANSAC_THRESHOLD  # pixels
    min_inliers: int = config.RANSAC_MIN_INLIERS
    confidence: float = config.RANSAC_CONFIDENCE

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.threshold <= 0:
            raise ValueError(f"threshold must be positive, got {self.threshold}")
        if self.min_inliers < 0:
            raise ValueError(f"min_inliers must be >= 0, got {self.min_inliers}")
        if not 0.0 < self.confidence < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {self.confidence}")


@dataclass(frozen=True)
class GeometricVerificationResult:
    fundamental_matrix: np.ndarray  # 3x3, x2^T F x1 = 0 (x1 query, x2 train)
    inliers: Tuple[int, ...]        # positions in the input match list
    inlier_ratio: float

    @property
    def inlier_count(self) -> int:
        return len(self.inliers)

    @property
    def is_valid(self) -> bool:
        """At least 30% of the matches agree with the model."""
        return self.inlier_ratio > 0.3

    def inlier_matches(self, matches: Sequence[FeatureMatch]):
        return [matches[i] for i in self.inliers]


def normalize_points(points: np.ndarray) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """
    Translate points to their centroid and scale to mean distance sqrt(2).

    Returns:
        (normalized homogeneous points (N, 3), 3x3 transform), or None when
        all points coincide
    """
    centroid = points.mean(axis=0)
    mean_dist = np.mean(np.linalg.norm(points - centroid, axis=1))
    if not np.isfinite(mean_dist) or mean_dist < 1e-12:
        return None

    s = math.sqrt(2) / mean_dist
    T = np.array([
        [s, 0, -s * centroid[0]],
        [0, s, -s * centroid[1]],
        [0, 0, 1],
    ])
    homogeneous = np.column_stack([points, np.ones(len(points))])
    return homogeneous @ T.T, T


def eight_point(pts1: np.ndarray, pts2: np.ndarray) -> Optional[np.ndarray]:
    """
    Normalized 8-point estimate of F from N >= 8 correspondences.

    With more than 8 points this is the linear least-squares solution.
    Returns None for degenerate or numerically singular input.
    """
    if len(pts1) < SAMPLE_SIZE:
        return None

    norm1 = normalize_points(pts1)
    norm2 = normalize_points(pts2)
    if norm1 is None or norm2 is None:
        return None
    p1, T1 = norm1
    p2, T2 = norm2

    x1, y1 = p1[:, 0], p1[:, 1]
    x2, y2 = p2[:, 0], p2[:, 1]
    A = np.column_stack([
        x2 * x1, x2 * y1, x2,
        y2 * x1, y2 * y1, y2,
        x1, y1, np.ones(len(x1)),
    ])

    try:
        _, _, Vt = np.linalg.svd(A)
        F_hat = Vt[-1].reshape(3, 3)

        # enforce rank 2
        U, S, Vt = np.linalg.svd(F_hat)
        S[-1] = 0.0
        F_hat = U @ np.diag(S) @ Vt
    except np.linalg.LinAlgError:
        return None

    F = T2.T @ F_hat @ T1
    norm = np.linalg.norm(F)
    if not np.isfinite(norm) or norm < 1e-15:
        return None
    return F / norm


def symmetric_epipolar_distance(F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Per-correspondence symmetric epipolar distance in pixels.

    Combines the distance of x2 to the epipolar line F x1 and of x1 to the
    line F^T x2. Degenerate lines give an infinite distance.
    """
    x1 = np.column_stack([pts1, np.ones(len(pts1))])
    x2 = np.column_stack([pts2, np.ones(len(pts2))])

    lines2 = x1 @ F.T  # F x1, lines in the train image
    lines1 = x2 @ F    # F^T x2, lines in the query image
    residual = np.abs(np.sum(x2 * lines2, axis=1))

    with np.errstate(divide='ignore', invalid='ignore'):
        dist = residual * np.sqrt(
            1.0 / (lines2[:, 0] ** 2 + lines2[:, 1] ** 2) +
            1.0 / (lines1[:, 0] ** 2 + lines1[:, 1] ** 2)
        )
    return np.where(np.isfinite(dist), dist, np.inf)


def check_epipolar_constraint(point1, point2, fundamental_matrix: np.ndarray,
                              threshold: float = config.RANSAC_THRESHOLD) -> bool:
    """True if (point1, point2) lies within threshold of the epipolar geometry."""
    dist = symmetric_epipolar_distance(
        fundamental_matrix,
        np.asarray([point1], dtype=np.float64),
        np.asarray([point2], dtype=np.float64),
    )
    return bool(dist[0] < threshold)


def compute_ransac_iterations(inlier_ratio: float, sample_size: int = SAMPLE_SIZE,
                              confidence: float = config.RANSAC_CONFIDENCE) -> int:
    """Trials needed to draw one all-inlier sample with the given confidence."""
    if inlier_ratio <= 0:
        return sys.maxsize
    p = inlier_ratio ** sample_size
    if p >= 1.0:
        return 1
    denom = math.log1p(-p)
    if denom == 0.0:
        return sys.maxsize
    return max(1, int(math.ceil(math.log(1.0 - confidence) / denom)))


def estimate_fundamental_matrix(matches: Sequence[FeatureMatch],
                                query_keypoints: Sequence[Keypoint],
                                train_keypoints: Sequence[Keypoint],
                                ransac_config: Optional[RansacConfig] = None,
                                rng: RandomSource = None) -> Optional[GeometricVerificationResult]:
    """
    Robustly estimate the fundamental matrix between two keypoint sets.

    Args:
        matches: Candidate correspondences (query -> train)
        query_keypoints: Keypoints indexed by FeatureMatch.query_idx
        train_keypoints: Keypoints indexed by FeatureMatch.train_idx
        ransac_config: RANSAC parameters (defaults from config.yml)
        rng: numpy Generator or seed used for sampling

    Returns:
        GeometricVerificationResult, or None when there are fewer than 8
        matches or the best model has fewer than min_inliers inliers
    """
    cfg = ransac_config or RansacConfig()
    n = len(matches)
    if n < SAMPLE_SIZE:
        logging.debug(f"Not enough matches for verification: {n} < {SAMPLE_SIZE}")
        return None

    rng = np.random.default_rng(rng)
    pts1, pts2 = matched_points(matches, query_keypoints, train_keypoints)

    best_F = None
    best_mask = None
    best_count = 0
    needed = cfg.max_iterations
    trials = 0

    while trials < min(cfg.max_iterations, needed):
        trials += 1
        sample = rng.choice(n, SAMPLE_SIZE, replace=False)

        F = eight_point(pts1[sample], pts2[sample])
        if F is None:
            continue

        mask = symmetric_epipolar_distance(F, pts1, pts2) < cfg.threshold
        count = int(np.count_nonzero(mask))
        if count > best_count:
            best_count = count
            best_mask = mask
            best_F = F
            needed = compute_ransac_iterations(count / n, SAMPLE_SIZE, cfg.confidence)

    if best_F is None or best_count < cfg.min_inliers:
        logging.warning(f"RANSAC failed: {best_count}/{n} inliers after {trials} trials")
        return None

    refined = eight_point(pts1[best_mask], pts2[best_mask])
    if refined is not None:
        best_F = refined

    inliers = tuple(int(i) for i in np.flatnonzero(best_mask))
    inlier_ratio = best_count / n
    logging.debug(f"RANSAC success: {best_count}/{n} inliers ({inlier_ratio * 100:.1f}%) "
                  f"in {trials} trials")

    return GeometricVerificationResult(
        fundamental_matrix=best_F,
        inliers=inliers,
        inlier_ratio=inlier_ratio,
    )


class GeometricVerifier:
    """
    Convenience wrapper binding a RANSAC config and a random source.

    The generator is the only state; give each thread its own verifier
    (or pass explicit seeds) when verifying in parallel.
    """

    def __init__(self, ransac_config: Optional[RansacConfig] = None, rng: RandomSource = None):
        self.config = ransac_config or RansacConfig()
        self.rng = np.random.default_rng(rng)

    def estimate_fundamental_matrix(self, matches: Sequence[FeatureMatch],
                                    query_keypoints: Sequence[Keypoint],
                                    train_keypoints: Sequence[Keypoint]) -> Optional[GeometricVerificationResult]:
        return estimate_fundamental_matrix(matches, query_keypoints, train_keypoints,
                                           self.config, self.rng)

    def check_epipolar_constraint(self, point1, point2, fundamental_matrix: np.ndarray) -> bool:
        return check_epipolar_constraint(point1, point2, fundamental_matrix, self.config.threshold)
