import unittest
import numpy as np
import sys
import os
import cv2

# Add src to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from pose import Pose, compose_matrix, quaternion_to_rotation_matrix, rotation_matrix_to_quaternion


class TestPose(unittest.TestCase):
    def test_identity(self):
        pose = Pose.identity()
        np.testing.assert_array_equal(pose.matrix, np.eye(4))
        np.testing.assert_array_equal(pose.rotation, [0.0, 0.0, 0.0, 1.0])

    def test_from_rvec_tvec(self):
        rvec = np.array([0.3, -0.2, 0.5])
        tvec = np.array([0.1, 0.2, 1.5])
        pose = Pose.from_rvec_tvec(rvec, tvec)

        R, _ = cv2.Rodrigues(rvec)
        np.testing.assert_allclose(pose.rotation_matrix, R, atol=1e-9)
        np.testing.assert_allclose(pose.matrix[:3, 3], tvec)
        np.testing.assert_allclose(pose.matrix[3], [0.0, 0.0, 0.0, 1.0])
        self.assertAlmostEqual(float(np.linalg.norm(pose.rotation)), 1.0)

    def test_quaternion_round_trip_near_180_degrees(self):
        # trace <= 0 branches
        for rvec in ([np.pi - 0.01, 0, 0], [0, np.pi - 0.01, 0], [0, 0, np.pi - 0.01]):
            R, _ = cv2.Rodrigues(np.array(rvec, dtype=np.float64))
            q = rotation_matrix_to_quaternion(R)
            np.testing.assert_allclose(quaternion_to_rotation_matrix(q), R, atol=1e-9)

    def test_rotation_is_normalized(self):
        pose = Pose(position=[0, 0, 1], rotation=[0, 0, 0, 2])
        np.testing.assert_array_equal(pose.rotation, [0.0, 0.0, 0.0, 1.0])

    def test_compose_with_scale(self):
        T = compose_matrix(np.array([1.0, 2.0, 3.0]), np.array([0.0, 0.0, 0.0, 1.0]),
                           scale=np.array([2.0, 2.0, 2.0]))
        np.testing.assert_allclose(T[:3, :3], 2.0 * np.eye(3))
        np.testing.assert_allclose(T[:3, 3], [1.0, 2.0, 3.0])

    def test_explicit_matrix_must_match(self):
        position = np.array([0.1, 0.2, 1.5])
        rotation = rotation_matrix_to_quaternion(cv2.Rodrigues(np.array([0.0, 0.4, 0.0]))[0])
        matrix = compose_matrix(position, rotation)

        pose = Pose(position=position, rotation=rotation, matrix=matrix)
        np.testing.assert_allclose(pose.rotation_matrix, quaternion_to_rotation_matrix(rotation))

        with self.assertRaises(ValueError):
            Pose(position=position, rotation=[0.0, 0.0, 0.0, 1.0], matrix=matrix)
        with self.assertRaises(ValueError):
            Pose(position=[0.0, 0.0, 0.0], rotation=rotation, matrix=matrix)


if __name__ == '__main__':
    unittest.main()
