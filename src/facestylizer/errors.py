"""Exception hierarchy for FaceStylizer.

Configuration errors are raised while the pipeline is assembled and abort
assembly. Per-frame errors are raised while a single frame is processed and
leave the pipeline usable for the next frame.
"""

from __future__ import annotations


class FaceStylizerError(Exception):
    """Base class for all FaceStylizer errors."""


class InvalidArgumentError(FaceStylizerError, ValueError):
    """Invalid configuration or structurally incompatible data."""


class ModelAssetError(FaceStylizerError):
    """A required model asset is missing or unreadable."""


class LandmarkCountError(FaceStylizerError):
    """A frame produced more landmark sets than the single supported face."""


class DegenerateTransformError(FaceStylizerError):
    """An affine transform could not be inverted."""


class FailedPreconditionError(FaceStylizerError, RuntimeError):
    """The task API was called in a state that does not allow the call."""
