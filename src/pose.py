"""
Pose representation for tracked images: position, unit quaternion [x, y, z, w]
and the composed 4x4 transform.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import cv2


def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    """Ensure quaternion has unit length (identity for a zero quaternion)."""
    q = np.asarray(q, dtype=np.float64)
    norm_q = np.linalg.norm(q)
    if norm_q < 1e-15:
        return np.array([0.0, 0.0, 0.0, 1.0])
    return q / norm_q


def rotation_matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Convert a 3x3 rotation matrix to a quaternion [x, y, z, w]."""
    q = np.zeros(4, dtype=np.float64)
    trace = R[0, 0] + R[1, 1] + R[2, 2]
    if trace > 0.0:
        s = 0.5 / np.sqrt(trace + 1.0)
        q[3] = 0.25 / s
        q[0] = (R[2, 1] - R[1, 2]) * s
        q[1] = (R[0, 2] - R[2, 0]) * s
        q[2] = (R[1, 0] - R[0, 1]) * s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        q[3] = (R[2, 1] - R[1, 2]) / s
        q[0] = 0.25 * s
        q[1] = (R[0, 1] + R[1, 0]) / s
        q[2] = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        q[3] = (R[0, 2] - R[2, 0]) / s
        q[0] = (R[0, 1] + R[1, 0]) / s
        q[1] = 0.25 * s
        q[2] = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        q[3] = (R[1, 0] - R[0, 1]) / s
        q[0] = (R[0, 2] + R[2, 0]) / s
        q[1] = (R[1, 2] + R[2, 1]) / s
        q[2] = 0.25 * s
    return normalize_quaternion(q)


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """Convert a quaternion [x, y, z, w] to a 3x3 rotation matrix."""
    x, y, z, w = q
    xx, yy, zz = x*x, y*y, z*z
    xy, xz, yz = x*y, x*z, y*z
    wx, wy, wz = w*x, w*y, w*z

    return np.array([
        [1.0 - 2.0*(yy + zz),     2.0*(xy - wz),         2.0*(xz + wy)],
        [2.0*(xy + wz),           1.0 - 2.0*(xx + zz),   2.0*(yz - wx)],
        [2.0*(xz - wy),           2.0*(yz + wx),         1.0 - 2.0*(xx + yy)]
    ], dtype=np.float64)


def compose_matrix(position: np.ndarray, rotation: np.ndarray,
                   scale: Optional[np.ndarray] = None) -> np.ndarray:
    """4x4 transform = T(position) * R(rotation) * S(scale)."""
    T = np.eye(4, dtype=np.float64)
    R = quaternion_to_rotation_matrix(rotation)
    if scale is not None:
        R = R * np.asarray(scale, dtype=np.float64)[np.newaxis, :]
    T[:3, :3] = R
    T[:3, 3] = position
    return T


@dataclass(frozen=True)
class Pose:
    position: np.ndarray   # (3,)
    rotation: np.ndarray   # (4,) unit quaternion [x, y, z, w]
    matrix: Optional[np.ndarray] = None  # (4, 4), composed when omitted, validated otherwise

    def __post_init__(self):
        position = np.asarray(self.position, dtype=np.float64).reshape(3)
        rotation = normalize_quaternion(np.asarray(self.rotation, dtype=np.float64).reshape(4))
        object.__setattr__(self, 'position', position)
        object.__setattr__(self, 'rotation', rotation)
        composed = compose_matrix(position, rotation)
        if self.matrix is None:
            object.__setattr__(self, 'matrix', composed)
            return
        matrix = np.asarray(self.matrix, dtype=np.float64).reshape(4, 4)
        if not np.allclose(matrix, composed, atol=1e-6):
            raise ValueError("matrix does not match position and rotation")
        object.__setattr__(self, 'matrix', matrix)

    @property
    def rotation_matrix(self) -> np.ndarray:
        return self.matrix[:3, :3].copy()

    @classmethod
    def identity(cls) -> "Pose":
        return cls(position=np.zeros(3), rotation=np.array([0.0, 0.0, 0.0, 1.0]))

    @classmethod
    def from_rotation_matrix(cls, R: np.ndarray, translation: np.ndarray) -> "Pose":
        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        return cls(position=np.asarray(translation, dtype=np.float64).reshape(3),
                   rotation=rotation_matrix_to_quaternion(R))

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> "Pose":
        """From a Rodrigues rotation vector and translation (cv2.solvePnP output)."""
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls.from_rotation_matrix(R, tvec)
