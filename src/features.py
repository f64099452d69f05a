"""
Feature Types

Keypoints and candidate matches as produced by the external detector and
matcher. The adapters accept OpenCV's cv2.KeyPoint / cv2.DMatch so ORB or
AKAZE output can be fed straight into the verifier.
"""

from dataclasses import dataclass
from typing import Iterable, List, Sequence
import numpy as np
import cv2


@dataclass(frozen=True)
class Keypoint:
    """Detected 2D feature location in source-level pixel coordinates."""
    x: float
    y: float
    angle: float = 0.0
    response: float = 0.0
    octave: int = 0

    @classmethod
    def from_cv(cls, kp: cv2.KeyPoint) -> "Keypoint":
        return cls(x=float(kp.pt[0]), y=float(kp.pt[1]), angle=float(kp.angle),
                   response=float(kp.response), octave=int(kp.octave))


@dataclass(frozen=True)
class FeatureMatch:
    """Candidate correspondence between a query and a train keypoint."""
    query_idx: int
    train_idx: int
    distance: float = 0.0  # smaller = more similar

    @classmethod
    def from_cv(cls, match: cv2.DMatch) -> "FeatureMatch":
        return cls(query_idx=int(match.queryIdx), train_idx=int(match.trainIdx),
                   distance=float(match.distance))


def keypoints_from_cv(keypoints: Iterable[cv2.KeyPoint]) -> List[Keypoint]:
    return [Keypoint.from_cv(kp) for kp in keypoints]


def matches_from_cv(matches: Iterable[cv2.DMatch]) -> List[FeatureMatch]:
    return [FeatureMatch.from_cv(m) for m in matches]


def matched_points(matches: Sequence[FeatureMatch],
                   query_keypoints: Sequence[Keypoint],
                   train_keypoints: Sequence[Keypoint]):
    """
    Gather matched coordinates.

    Returns:
        pts1: (N, 2) query points
        pts2: (N, 2) train points
    """
    if len(matches) == 0:
        return np.empty((0, 2), dtype=np.float64), np.empty((0, 2), dtype=np.float64)
    pts1 = np.array([(query_keypoints[m.query_idx].x, query_keypoints[m.query_idx].y)
                     for m in matches], dtype=np.float64)
    pts2 = np.array([(train_keypoints[m.train_idx].x, train_keypoints[m.train_idx].y)
                     for m in matches], dtype=np.float64)
    return pts1, pts2
