"""
Natural Image Tracker

Orchestrates tracking of arbitrary flat images (no fiducial markers).

Key Concepts:
- Reference store: registered images and their pyramids, capped at max_images
- Tracking state: per-image NOT_TRACKED / TRACKING, driven by the caller
  through update_tracking / clear_tracking (no automatic timeouts)
- Detection throttling: the tracker records when each image was last
  fully re-detected; the frame loop decides when to run detection

Per-frame flow (driven by the caller):
    match keypoints -> estimate_fundamental_matrix -> external pose solver
    -> create_tracked_image -> update_tracking
"""

import time
import threading
import logging
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

import numpy as np

import config
from background_loader import BackgroundImageLoader
from errors import ReferenceImageNotFoundError
from features import FeatureMatch
from pose import Pose
from reference_store import (
    ReferenceImage, ReferenceImageDescriptor, ReferenceImageStore, create_reference_image,
)


class TrackingState(Enum):
    NOT_TRACKED = "not_tracked"
    TRACKING = "tracking"


@dataclass(frozen=True)
class TrackingConfig:
    max_images: int = config.MAX_IMAGES
    detection_interval: int = config.DETECTION_INTERVAL  # frames between re-detections
    min_match_count: int = config.MIN_MATCH_COUNT

    def __post_init__(self):
        if self.max_images < 0:
            raise ValueError(f"max_images must be >= 0, got {self.max_images}")
        if self.detection_interval < 0:
            raise ValueError(f"detection_interval must be >= 0, got {self.detection_interval}")
        if self.min_match_count < 0:
            raise ValueError(f"min_match_count must be >= 0, got {self.min_match_count}")


@dataclass
class TrackedImage:
    """Latest tracking result for one reference image."""
    image_id: str
    pose: Pose
    confidence: float
    match_count: int = 0
    is_tracking: bool = True
    last_update: float = field(default_factory=time.time)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")


class NaturalImageTracker:
    """
    Owns the reference store and the per-image tracking state.

    All mutating methods must be called from one owning thread; only the
    background loader publishes from another, through _admit.
    """

    def __init__(self, tracking_config: Optional[TrackingConfig] = None):
        self.config = tracking_config or TrackingConfig()
        self.reference_store = ReferenceImageStore()
        self.tracked_images: Dict[str, TrackedImage] = {}
        self.last_detection_frame: Dict[str, int] = {}
        self.frame_count = 0
        self.loader: Optional[BackgroundImageLoader] = None
        self._lock = threading.RLock()  # guards store admission and teardown
        logging.info(f"Natural image tracker initialized (max_images={self.config.max_images})")

    # -- Reference images --

    def _has_capacity(self) -> bool:
        return self.reference_store.get_count() < self.config.max_images

    def add_reference_image(self, descriptor: ReferenceImageDescriptor) -> bool:
        """
        Register a reference image if the tracker has room for it.

        The pyramid is built outside the lock; capacity is checked again at
        insertion, so a background publish that lands meanwhile wins the slot.

        Returns:
            True if added, False if max_images was already reached

        Raises:
            ImageValidationError: for malformed image input
        """
        if not self._has_capacity():
            logging.warning(f"Maximum images reached ({self.config.max_images}), "
                            f"not adding: {descriptor.id}")
            return False

        image = create_reference_image(descriptor)
        return self._admit(image)

    def _admit(self, image: ReferenceImage) -> bool:
        """Capacity check and insert, shared by the sync and background paths."""
        with self._lock:
            if not self._has_capacity():
                logging.warning(f"Maximum images reached ({self.config.max_images}), "
                                f"not adding: {image.id}")
                return False
            self.reference_store.insert(image)
            return True

    def add_reference_image_async(self, descriptor: ReferenceImageDescriptor) -> Future:
        """
        Build the pyramid off-thread, then register it (capacity checked at publish).

        Returns:
            Future resolving to the ReferenceImage, or None if it was refused
        """
        if self.loader is None:
            self.loader = BackgroundImageLoader(self._admit, lock=self._lock)
        return self.loader.submit(descriptor)

    def remove_reference_image(self, image_id: str) -> bool:
        """Remove an image and any tracking state it had."""
        with self._lock:
            removed = self.reference_store.remove_image(image_id)
        self.clear_tracking(image_id)
        self.last_detection_frame.pop(image_id, None)
        return removed

    def get_reference_store(self) -> ReferenceImageStore:
        return self.reference_store

    # -- Tracking state --

    def update_tracking(self, image_id: str, tracked: TrackedImage) -> bool:
        """
        Record the latest tracking result, moving the image to TRACKING.

        Returns:
            False (nothing stored) if the image is not registered or
            tracked.image_id names a different image
        """
        if tracked.image_id != image_id:
            logging.warning(f"Ignoring tracking update for {image_id}: "
                            f"result belongs to {tracked.image_id}")
            return False
        if image_id not in self.reference_store:
            logging.warning(f"Ignoring tracking update for unknown image: {image_id}")
            return False
        self.tracked_images[image_id] = tracked
        return True

    def clear_tracking(self, image_id: str) -> bool:
        """Move an image back to NOT_TRACKED. Returns True if it was tracked."""
        if image_id in self.tracked_images:
            del self.tracked_images[image_id]
            logging.debug(f"Tracking cleared: {image_id}")
            return True
        return False

    def get_tracked_images(self) -> List[TrackedImage]:
        return list(self.tracked_images.values())

    def get_tracked_image(self, image_id: str) -> Optional[TrackedImage]:
        return self.tracked_images.get(image_id)

    def get_tracking_state(self, image_id: str) -> TrackingState:
        if image_id in self.tracked_images:
            return TrackingState.TRACKING
        return TrackingState.NOT_TRACKED

    def create_tracked_image(self, image_id: str, rotation: np.ndarray, translation: np.ndarray,
                             confidence: float, match_count: int = 0,
                             timestamp: Optional[float] = None) -> TrackedImage:
        """
        Build a TrackedImage from pose solver output.

        Args:
            image_id: Registered reference image
            rotation: Rodrigues vector (3,) or rotation matrix (3, 3)
            translation: Translation in reference-image units (image width = 1)
            confidence: Tracking confidence in [0, 1]
            match_count: Number of verified correspondences
            timestamp: Update time, defaults to now

        Raises:
            ReferenceImageNotFoundError: if image_id is not registered
        """
        image = self.reference_store.get_image(image_id)
        if image is None:
            raise ReferenceImageNotFoundError(image_id)

        rotation = np.asarray(rotation, dtype=np.float64)
        position = np.asarray(translation, dtype=np.float64).reshape(3) * image.physical_width
        if rotation.size == 9:
            pose = Pose.from_rotation_matrix(rotation, position)
        else:
            pose = Pose.from_rvec_tvec(rotation, position)

        return TrackedImage(
            image_id=image_id,
            pose=pose,
            confidence=confidence,
            match_count=match_count,
            is_tracking=True,
            last_update=time.time() if timestamp is None else timestamp,
        )

    # -- Detection throttling --

    def advance_frame(self) -> int:
        self.frame_count += 1
        return self.frame_count

    def mark_detection(self, image_id: str) -> None:
        """Record that a full detection pass ran for this image on the current frame."""
        self.last_detection_frame[image_id] = self.frame_count

    def is_detection_due(self, image_id: str) -> bool:
        """
        Untracked images are always due; tracked ones once detection_interval
        frames have passed since their last recorded detection.
        """
        if image_id not in self.tracked_images:
            return True
        last = self.last_detection_frame.get(image_id)
        if last is None:
            return True
        return self.frame_count - last >= self.config.detection_interval

    def has_enough_matches(self, matches: Sequence[FeatureMatch]) -> bool:
        """Pre-filter applied before geometric verification."""
        return len(matches) >= self.config.min_match_count

    # -- Lifecycle --

    def get_stats(self) -> Dict:
        """Get tracker statistics for debugging/monitoring."""
        return {
            "frame_count": self.frame_count,
            "image_count": self.reference_store.get_count(),
            "max_images": self.config.max_images,
            "tracking_count": len(self.tracked_images),
            "pending_loads": self.loader.pending_count() if self.loader else 0,
        }

    def destroy(self) -> None:
        """Release all state: pending loads, tracking and reference images."""
        if self.loader is not None:
            # stops further publishes; one already holding the lock finishes first
            self.loader.shutdown()
            self.loader = None
        with self._lock:
            self.tracked_images.clear()
            self.last_detection_frame.clear()
            self.frame_count = 0
            self.reference_store.clear()
        logging.info("Tracker destroyed")
