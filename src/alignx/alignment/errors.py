"""Exception types raised by the alignment engine.

Only conditions that are fatal for a single image are exceptions. A missing
face is an expected outcome and is reported as a ``DetectionFailure`` value
instead (see ``alignx.alignment.landmarks``).
"""

from __future__ import annotations


class AlignmentError(Exception):
    """Base class for alignment engine errors."""


class ImageDecodeError(AlignmentError, ValueError):
    """The input bytes could not be decoded into a non-empty raster."""


class BufferAllocationError(AlignmentError, RuntimeError):
    """The destination raster for a template could not be allocated."""


class DetectionTimeoutError(AlignmentError, TimeoutError):
    """The landmark detector did not answer within the configured timeout."""


class InvalidStateTransition(AlignmentError, RuntimeError):
    """A per-image job attempted a transition its state machine forbids."""


class DetectorBusyError(DetectionTimeoutError):
    """An earlier timed-out detector call still holds the detector."""
