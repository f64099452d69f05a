"""
Reference Image Store

Keeps the registered reference images ("markers") together with their
multi-scale pyramids, ready for matching against camera frames.

Key Concepts:
- Pyramid: level 0 is the source image, every next level is 80% of the
  previous one per axis, until a side would drop below 32 pixels
- Validation first: malformed buffers are rejected before any resampling
- Publish after build: an entry becomes visible only once its pyramid
  is complete, so readers never see a partial pyramid
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import cv2

import config
from errors import ImageValidationError
from features import Keypoint


PixelBuffer = Union[np.ndarray, bytes, bytearray, memoryview]

# dtypes cv2.resize can interpolate
_RESIZABLE_DTYPES = (np.uint8, np.uint16, np.int16, np.float32, np.float64)


@dataclass(frozen=True)
class ImagePyramid:
    """Ordered multi-resolution levels and their scale relative to level 0."""
    levels: List[np.ndarray]
    scales: List[float]

    def __len__(self) -> int:
        return len(self.levels)

    def level_size(self, index: int):
        """(width, height) of a level."""
        level = self.levels[index]
        return level.shape[1], level.shape[0]


@dataclass
class ScaleLevelFeatures:
    """Detector output cached for one pyramid level."""
    scale: float
    keypoints: List[Keypoint] = field(default_factory=list)
    descriptors: Optional[np.ndarray] = None


@dataclass
class ReferenceImageDescriptor:
    """
    Input for registering a reference image.

    pixel_buffer is either an (H, W) / (H, W, C) array or a flat row-major
    buffer of width * height * channels values.
    """
    id: str
    pixel_buffer: PixelBuffer
    width: Optional[int] = None
    height: Optional[int] = None
    physical_width: Optional[float] = None   # metres
    physical_height: Optional[float] = None  # metres
    channels: Optional[int] = None


@dataclass(frozen=True)
class ReferenceImage:
    id: str
    width: int
    height: int
    physical_width: float
    physical_height: float
    pyramid: ImagePyramid
    features: List[ScaleLevelFeatures]


def validate_pixel_buffer(pixel_buffer: PixelBuffer, width: Optional[int] = None,
                          height: Optional[int] = None, channels: Optional[int] = None,
                          min_size: Optional[int] = None) -> np.ndarray:
    """
    Check a pixel buffer against its declared dimensions.

    Args:
        pixel_buffer: Image array or flat row-major buffer
        width: Declared width (inferred from array shape when None)
        height: Declared height (inferred from array shape when None)
        channels: Channels per pixel for flat buffers
        min_size: Smallest acceptable side length

    Returns:
        The pixels as an (H, W) or (H, W, C) array

    Raises:
        ImageValidationError: if the buffer cannot form a valid pyramid base
    """
    min_size = config.PYRAMID_MIN_SIZE if min_size is None else min_size

    if pixel_buffer is None:
        raise ImageValidationError("Pixel buffer is missing")

    if isinstance(pixel_buffer, (bytes, bytearray, memoryview)):
        pixels = np.frombuffer(pixel_buffer, dtype=np.uint8)
    elif isinstance(pixel_buffer, np.ndarray):
        pixels = pixel_buffer
    else:
        raise ImageValidationError("Unsupported pixel buffer type",
                                   {"type": type(pixel_buffer).__name__})

    if pixels.ndim in (2, 3):
        height = pixels.shape[0] if height is None else height
        width = pixels.shape[1] if width is None else width

    if width is None or height is None:
        raise ImageValidationError("Flat pixel buffers need explicit width and height")
    if width <= 0 or height <= 0:
        raise ImageValidationError("Image dimensions must be positive",
                                   {"width": width, "height": height})
    if pixels.size == 0:
        raise ImageValidationError("Pixel buffer is empty", {"width": width, "height": height})
    if pixels.dtype.type not in _RESIZABLE_DTYPES:
        raise ImageValidationError("Unsupported pixel type", {"dtype": str(pixels.dtype)})

    if pixels.ndim == 1:
        channels = config.DEFAULT_CHANNELS if channels is None else channels
        expected = width * height * channels
        if pixels.size != expected:
            raise ImageValidationError("Buffer size does not match dimensions",
                                       {"width": width, "height": height, "channels": channels,
                                        "expected": expected, "actual": int(pixels.size)})
        pixels = pixels.reshape((height, width) if channels == 1 else (height, width, channels))
    elif pixels.ndim in (2, 3):
        if pixels.shape[:2] != (height, width):
            raise ImageValidationError("Array shape does not match dimensions",
                                       {"width": width, "height": height,
                                        "shape": tuple(pixels.shape)})
        if channels is not None and pixels.ndim == 3 and pixels.shape[2] != channels:
            raise ImageValidationError("Channel count does not match",
                                       {"channels": channels, "shape": tuple(pixels.shape)})
    else:
        raise ImageValidationError("Pixel array must be 1, 2 or 3 dimensional",
                                   {"ndim": pixels.ndim})

    if width < min_size or height < min_size:
        raise ImageValidationError(f"Image must be at least {min_size}x{min_size} pixels",
                                   {"width": width, "height": height})
    return pixels


def build_pyramid(pixels: np.ndarray, scale_factor: Optional[float] = None,
                  min_size: Optional[int] = None, max_levels: Optional[int] = None) -> ImagePyramid:
    """
    Build a multi-scale pyramid with bilinear downsampling.

    Each level is floor(previous * scale_factor) per axis. Stops when the
    next level would have a side below min_size or max_levels is reached.
    """
    scale_factor = config.PYRAMID_SCALE_FACTOR if scale_factor is None else scale_factor
    min_size = config.PYRAMID_MIN_SIZE if min_size is None else min_size
    max_levels = config.PYRAMID_MAX_LEVELS if max_levels is None else max_levels

    if not 0.0 < scale_factor < 1.0:
        raise ValueError(f"scale_factor must be in (0, 1), got {scale_factor}")

    base = np.array(pixels, copy=True)
    base.setflags(write=False)
    levels = [base]
    scales = [1.0]

    while max_levels is None or len(levels) < max_levels:
        prev = levels[-1]
        prev_h, prev_w = prev.shape[:2]
        # epsilon guards products like 0.8 * 40 landing just below an integer
        next_w = math.floor(prev_w * scale_factor + 1e-9)
        next_h = math.floor(prev_h * scale_factor + 1e-9)
        if min(next_w, next_h) < min_size:
            break

        level = cv2.resize(prev, (next_w, next_h), interpolation=cv2.INTER_LINEAR)
        if prev.ndim == 3 and level.ndim == 2:
            # cv2 drops a trailing singleton channel
            level = level[:, :, np.newaxis]
        level.setflags(write=False)

        levels.append(level)
        scales.append(scale_factor ** (len(levels) - 1))

    logging.debug(f"Built pyramid with {len(levels)} levels "
                  f"({base.shape[1]}x{base.shape[0]} -> {levels[-1].shape[1]}x{levels[-1].shape[0]})")
    return ImagePyramid(levels=levels, scales=scales)


def create_reference_image(descriptor: ReferenceImageDescriptor) -> ReferenceImage:
    """Validate a descriptor and build its complete, unpublished entry."""
    if not descriptor.id:
        raise ImageValidationError("Reference image id must be a non-empty string")

    pixels = validate_pixel_buffer(descriptor.pixel_buffer, descriptor.width,
                                   descriptor.height, descriptor.channels)
    height, width = pixels.shape[:2]

    physical_width = descriptor.physical_width
    if physical_width is None:
        physical_width = config.DEFAULT_PHYSICAL_WIDTH
    if physical_width <= 0:
        raise ImageValidationError("Physical width must be positive",
                                   {"physical_width": physical_width})
    physical_height = descriptor.physical_height
    if physical_height is None:
        physical_height = height / width * physical_width

    pyramid = build_pyramid(pixels)
    return ReferenceImage(
        id=descriptor.id,
        width=width,
        height=height,
        physical_width=physical_width,
        physical_height=physical_height,
        pyramid=pyramid,
        features=[ScaleLevelFeatures(scale=s) for s in pyramid.scales],
    )


class ReferenceImageStore:
    """
    Keyed collection of reference images.

    Ids are unique; adding an existing id replaces its entry. Mutations are
    expected from a single owning thread, apart from insert() which only
    ever publishes fully built entries.
    """

    def __init__(self):
        self.images: Dict[str, ReferenceImage] = {}

    def add_image(self, descriptor: ReferenceImageDescriptor) -> ReferenceImage:
        """
        Build the pyramid for a descriptor, then insert it.

        Raises:
            ImageValidationError: for malformed input; the store is unchanged
        """
        logging.info(f"Adding reference image: {descriptor.id}")
        image = create_reference_image(descriptor)
        self.insert(image)
        return image

    def insert(self, image: ReferenceImage) -> None:
        """Publish an already built reference image (last write wins)."""
        replaced = image.id in self.images
        self.images[image.id] = image
        logging.info(f"Reference image {'replaced' if replaced else 'added'}: {image.id} "
                     f"({image.width}x{image.height}, {len(image.pyramid)} levels)")

    def remove_image(self, image_id: str) -> bool:
        """Remove an image. Returns True if it existed."""
        if image_id in self.images:
            del self.images[image_id]
            logging.info(f"Reference image removed: {image_id}")
            return True
        return False

    def get_image(self, image_id: str) -> Optional[ReferenceImage]:
        return self.images.get(image_id)

    def get_all_images(self) -> List[ReferenceImage]:
        return list(self.images.values())

    def get_count(self) -> int:
        return len(self.images)

    def attach_features(self, image_id: str, level: int, keypoints: Sequence[Keypoint],
                        descriptors: Optional[np.ndarray] = None) -> bool:
        """
        Cache detector output for one pyramid level of an image.

        Returns:
            False if the image or level does not exist
        """
        image = self.images.get(image_id)
        if image is None or not 0 <= level < len(image.features):
            return False
        image.features[level] = ScaleLevelFeatures(
            scale=image.pyramid.scales[level],
            keypoints=list(keypoints),
            descriptors=descriptors,
        )
        return True

    def clear(self) -> None:
        self.images.clear()
        logging.info("All reference images cleared")

    def __len__(self) -> int:
        return len(self.images)

    def __contains__(self, image_id: str) -> bool:
        return image_id in self.images
