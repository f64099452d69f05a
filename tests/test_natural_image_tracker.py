import unittest
import numpy as np
import sys
import os
import cv2
import threading
from unittest import mock

# Add src to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

import natural_image_tracker
from errors import ImageValidationError, ReferenceImageNotFoundError
from features import FeatureMatch
from natural_image_tracker import NaturalImageTracker, TrackedImage, TrackingConfig, TrackingState
from pose import Pose
from reference_store import ReferenceImageDescriptor


def descriptor(image_id, width=100, height=100, **kwargs):
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    return ReferenceImageDescriptor(id=image_id, pixel_buffer=pixels,
                                    width=width, height=height, **kwargs)


def tracked(image_id, z=1.0, confidence=0.85):
    pose = Pose(position=np.array([0.0, 0.0, z]), rotation=np.array([0.0, 0.0, 0.0, 1.0]))
    return TrackedImage(image_id=image_id, pose=pose, confidence=confidence, match_count=50)


class TestReferenceImageManagement(unittest.TestCase):
    def setUp(self):
        self.tracker = NaturalImageTracker(TrackingConfig(max_images=5, min_match_count=15,
                                                          detection_interval=5))

    def tearDown(self):
        self.tracker.destroy()

    def test_default_config(self):
        tracker = NaturalImageTracker()
        self.assertEqual(tracker.config.max_images, 5)
        self.assertEqual(tracker.config.detection_interval, 5)
        self.assertEqual(tracker.config.min_match_count, 15)

    def test_add_reference_image(self):
        self.assertTrue(self.tracker.add_reference_image(descriptor('tracker-test', physical_width=0.2)))
        self.assertEqual(self.tracker.get_reference_store().get_count(), 1)

    def test_invalid_image_raises(self):
        bad = ReferenceImageDescriptor(id='bad', pixel_buffer=bytes(3), width=100, height=100)
        with self.assertRaises(ImageValidationError):
            self.tracker.add_reference_image(bad)
        self.assertEqual(self.tracker.get_reference_store().get_count(), 0)

    def test_remove_reference_image(self):
        self.tracker.add_reference_image(descriptor('remove-tracker-test'))

        self.assertTrue(self.tracker.remove_reference_image('remove-tracker-test'))
        self.assertEqual(self.tracker.get_reference_store().get_count(), 0)
        self.assertFalse(self.tracker.remove_reference_image('remove-tracker-test'))

    def test_respects_max_images(self):
        for i in range(5):
            self.assertTrue(self.tracker.add_reference_image(descriptor(f'img-{i}', 50, 50)))

        store = self.tracker.get_reference_store()
        self.assertEqual(store.get_count(), 5)

        self.assertFalse(self.tracker.add_reference_image(descriptor('img-6', 50, 50)))
        self.assertEqual(store.get_count(), 5)
        self.assertIsNone(store.get_image('img-6'))


class TestTrackingState(unittest.TestCase):
    def setUp(self):
        self.tracker = NaturalImageTracker(TrackingConfig(max_images=5, detection_interval=5))
        self.tracker.add_reference_image(descriptor('track-test', physical_width=0.3))

    def test_not_tracked_initially(self):
        self.assertEqual(self.tracker.get_tracked_images(), [])
        self.assertIsNone(self.tracker.get_tracked_image('track-test'))
        self.assertEqual(self.tracker.get_tracking_state('track-test'), TrackingState.NOT_TRACKED)

    def test_update_tracking(self):
        state = tracked('track-test', z=1.5, confidence=0.9)

        self.assertTrue(self.tracker.update_tracking('track-test', state))

        result = self.tracker.get_tracked_image('track-test')
        self.assertEqual(result.image_id, 'track-test')
        self.assertEqual(result.confidence, 0.9)
        np.testing.assert_array_equal(result.pose.position, [0.0, 0.0, 1.5])
        self.assertTrue(result.is_tracking)
        self.assertEqual(self.tracker.get_tracking_state('track-test'), TrackingState.TRACKING)

    def test_update_overwrites(self):
        self.tracker.update_tracking('track-test', tracked('track-test', z=1.0))
        self.tracker.update_tracking('track-test', tracked('track-test', z=2.0))

        self.assertEqual(len(self.tracker.get_tracked_images()), 1)
        self.assertEqual(self.tracker.get_tracked_image('track-test').pose.position[2], 2.0)

    def test_update_unknown_image_is_ignored(self):
        self.assertFalse(self.tracker.update_tracking('ghost', tracked('ghost')))
        self.assertIsNone(self.tracker.get_tracked_image('ghost'))

    def test_update_with_mismatched_id_is_rejected(self):
        self.tracker.add_reference_image(descriptor('other'))

        self.assertFalse(self.tracker.update_tracking('track-test', tracked('other')))
        self.assertIsNone(self.tracker.get_tracked_image('track-test'))
        self.assertEqual(self.tracker.get_tracking_state('track-test'), TrackingState.NOT_TRACKED)

    def test_clear_tracking(self):
        self.tracker.update_tracking('track-test', tracked('track-test'))

        self.assertTrue(self.tracker.clear_tracking('track-test'))
        self.assertIsNone(self.tracker.get_tracked_image('track-test'))
        self.assertFalse(self.tracker.clear_tracking('track-test'))

    def test_remove_clears_tracking(self):
        self.tracker.update_tracking('track-test', tracked('track-test'))
        self.tracker.remove_reference_image('track-test')

        self.assertIsNone(self.tracker.get_tracked_image('track-test'))
        self.assertEqual(self.tracker.get_tracked_images(), [])

    def test_confidence_range(self):
        with self.assertRaises(ValueError):
            tracked('track-test', confidence=1.5)

    def test_create_tracked_image_scales_translation(self):
        rvec = np.array([0.0, 0.1, 0.0])
        result = self.tracker.create_tracked_image('track-test', rvec, [0.0, 0.0, 2.0],
                                                   confidence=0.8, match_count=42, timestamp=12.5)

        self.assertEqual(result.image_id, 'track-test')
        np.testing.assert_allclose(result.pose.position, [0.0, 0.0, 0.6])
        np.testing.assert_allclose(result.pose.rotation_matrix, cv2.Rodrigues(rvec)[0], atol=1e-9)
        np.testing.assert_allclose(result.pose.matrix[:3, 3], [0.0, 0.0, 0.6])
        self.assertEqual(result.match_count, 42)
        self.assertEqual(result.last_update, 12.5)

    def test_create_tracked_image_from_matrix(self):
        result = self.tracker.create_tracked_image('track-test', np.eye(3), [1.0, 0.0, 0.0], 0.5)
        np.testing.assert_allclose(result.pose.rotation, [0.0, 0.0, 0.0, 1.0])
        np.testing.assert_allclose(result.pose.position, [0.3, 0.0, 0.0])

    def test_create_tracked_image_unknown_id(self):
        with self.assertRaises(ReferenceImageNotFoundError):
            self.tracker.create_tracked_image('missing', np.zeros(3), np.zeros(3), 0.5)


class TestDetectionThrottling(unittest.TestCase):
    def setUp(self):
        self.tracker = NaturalImageTracker(TrackingConfig(detection_interval=3, min_match_count=4))
        self.tracker.add_reference_image(descriptor('a'))

    def test_untracked_always_due(self):
        self.tracker.mark_detection('a')
        self.assertTrue(self.tracker.is_detection_due('a'))

    def test_tracked_waits_for_interval(self):
        self.tracker.advance_frame()
        self.tracker.mark_detection('a')
        self.tracker.update_tracking('a', tracked('a'))

        due = []
        for _ in range(4):
            self.tracker.advance_frame()
            due.append(self.tracker.is_detection_due('a'))
        self.assertEqual(due, [False, False, True, True])

    def test_match_prefilter(self):
        matches = [FeatureMatch(i, i, 1.0) for i in range(3)]
        self.assertFalse(self.tracker.has_enough_matches(matches))
        matches.append(FeatureMatch(3, 3, 1.0))
        self.assertTrue(self.tracker.has_enough_matches(matches))


class TestAsyncRegistration(unittest.TestCase):
    def setUp(self):
        self.tracker = NaturalImageTracker(TrackingConfig(max_images=1))

    def tearDown(self):
        self.tracker.destroy()

    def test_async_add(self):
        image = self.tracker.add_reference_image_async(descriptor('async', 320, 240)).result(timeout=5)

        self.assertEqual(image.id, 'async')
        self.assertIs(self.tracker.get_reference_store().get_image('async'), image)

    def test_async_respects_capacity(self):
        self.tracker.add_reference_image(descriptor('first'))

        result = self.tracker.add_reference_image_async(descriptor('second')).result(timeout=5)

        self.assertIsNone(result)
        self.assertEqual(self.tracker.get_reference_store().get_count(), 1)

    def test_async_validation_error(self):
        bad = ReferenceImageDescriptor(id='bad', pixel_buffer=bytes(1), width=64, height=64)
        future = self.tracker.add_reference_image_async(bad)

        self.assertIsInstance(future.exception(timeout=5), ImageValidationError)
        self.assertEqual(self.tracker.get_reference_store().get_count(), 0)

    def test_async_publish_during_sync_build_respects_capacity(self):
        build = natural_image_tracker.create_reference_image
        async_results = []

        def build_while_async_lands(desc):
            image = build(desc)
            future = self.tracker.add_reference_image_async(descriptor('async'))
            async_results.append(future.result(timeout=5))
            return image

        with mock.patch('natural_image_tracker.create_reference_image',
                        side_effect=build_while_async_lands):
            added = self.tracker.add_reference_image(descriptor('sync'))

        store = self.tracker.get_reference_store()
        self.assertFalse(added)
        self.assertEqual(async_results[0].id, 'async')
        self.assertEqual(store.get_count(), 1)
        self.assertIn('async', store)
        self.assertNotIn('sync', store)


class TestLifecycle(unittest.TestCase):
    def test_destroy(self):
        tracker = NaturalImageTracker()
        tracker.add_reference_image(descriptor('destroy-test'))
        tracker.update_tracking('destroy-test', tracked('destroy-test'))
        tracker.advance_frame()

        tracker.destroy()

        self.assertEqual(tracker.get_reference_store().get_count(), 0)
        self.assertEqual(tracker.get_tracked_images(), [])
        self.assertEqual(tracker.get_stats()["frame_count"], 0)

    def test_publish_racing_destroy_leaves_store_empty(self):
        tracker = NaturalImageTracker(TrackingConfig(max_images=2))
        admit = tracker._admit
        destroyers = []
        destroy_finished_first = []

        def admit_while_destroying(image):
            destroyer = threading.Thread(target=tracker.destroy)
            destroyers.append(destroyer)
            destroyer.start()
            # longer than the loader's shutdown join
            destroyer.join(timeout=3.0)
            destroy_finished_first.append(not destroyer.is_alive())
            return admit(image)

        with mock.patch.object(tracker, '_admit', side_effect=admit_while_destroying):
            future = tracker.add_reference_image_async(descriptor('late', 160, 120))
            self.assertEqual(future.result(timeout=10).id, 'late')

        destroyers[0].join(timeout=5)
        self.assertFalse(destroyers[0].is_alive())
        self.assertEqual(destroy_finished_first, [False])
        self.assertEqual(tracker.get_reference_store().get_count(), 0)
        self.assertIsNone(tracker.loader)

    def test_stats(self):
        tracker = NaturalImageTracker(TrackingConfig(max_images=3))
        tracker.add_reference_image(descriptor('a'))
        tracker.update_tracking('a', tracked('a'))

        stats = tracker.get_stats()
        self.assertEqual(stats["image_count"], 1)
        self.assertEqual(stats["tracking_count"], 1)
        self.assertEqual(stats["max_images"], 3)

    def test_end_to_end_scenario(self):
        tracker = NaturalImageTracker(TrackingConfig(max_images=2))

        self.assertTrue(tracker.add_reference_image(descriptor('a')))
        self.assertTrue(tracker.add_reference_image(descriptor('b')))
        self.assertEqual(tracker.get_reference_store().get_count(), 2)

        self.assertFalse(tracker.add_reference_image(descriptor('c')))
        self.assertEqual(tracker.get_reference_store().get_count(), 2)

        pose1 = tracked('a', z=0.75, confidence=0.7)
        tracker.update_tracking('a', pose1)
        self.assertIs(tracker.get_tracked_image('a'), pose1)

        tracker.remove_reference_image('a')
        self.assertIsNone(tracker.get_tracked_image('a'))
        self.assertEqual(tracker.get_reference_store().get_count(), 1)


if __name__ == '__main__':
    unittest.main()
