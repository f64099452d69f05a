"""
Tracking Errors

Structured exceptions for the natural image tracking pipeline. Each error
carries a short machine-readable code and a context dict with the values
that caused it.

Recoverable conditions (too few matches, RANSAC failure, unknown ids,
capacity reached) are reported through return values, not exceptions.
"""

from typing import Any, Dict, Optional


INVALID_IMAGE = "INVALID_IMAGE"
REFERENCE_IMAGE_NOT_FOUND = "REFERENCE_IMAGE_NOT_FOUND"


class TrackingError(Exception):
    """Base class for errors raised by the tracking pipeline."""

    code = "TRACKING_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def __str__(self) -> str:
        if not self.context:
            return f"[{self.code}] {self.message}"
        details = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
        return f"[{self.code}] {self.message} ({details})"


class ImageValidationError(TrackingError, ValueError):
    """Pixel buffer or dimensions cannot produce a valid pyramid."""

    code = INVALID_IMAGE


class ReferenceImageNotFoundError(TrackingError, KeyError):
    """Operation requires a reference image that is not registered."""

    code = REFERENCE_IMAGE_NOT_FOUND

    def __init__(self, image_id: str):
        super().__init__(f"Reference image not found: {image_id}", {"image_id": image_id})
        self.image_id = image_id
