"""Frame-local value types: images, tensors and tensor value ranges."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal

import numpy as np

from facestylizer.errors import InvalidArgumentError

if TYPE_CHECKING:
    from numpy.typing import NDArray


class Location(StrEnum):
    CPU = "cpu"
    GPU = "gpu"


class ImageFormat(StrEnum):
    SRGB = "srgb"
    SRGBA = "srgba"


_CHANNELS_TO_FORMAT = {3: ImageFormat.SRGB, 4: ImageFormat.SRGBA}


@dataclass(frozen=True)
class Image:
    """A pixel buffer tagged with where it lives.

    ``data`` is an HxWxC uint8 numpy array for CPU images and a ``cv2.UMat``
    for GPU images. Width and height are carried explicitly because a UMat
    does not expose its shape without a download.
    """

    data: Any
    width: int
    height: int
    image_format: ImageFormat
    location: Location = Location.CPU

    @property
    def channels(self) -> int:
        return 4 if self.image_format == ImageFormat.SRGBA else 3

    @property
    def size(self) -> tuple[int, int]:
        """(width, height) in pixels."""
        return self.width, self.height

    @classmethod
    def from_array(cls, array: NDArray[np.uint8]) -> Image:
        """Wrap an HxWx3 (RGB) or HxWx4 (RGBA) uint8 array as a CPU image."""
        if array.ndim != 3 or array.shape[2] not in _CHANNELS_TO_FORMAT:
            raise InvalidArgumentError(f"Expected an HxWx3 or HxWx4 array, got shape {array.shape}")
        if array.dtype != np.uint8:
            raise InvalidArgumentError(f"Expected uint8 pixels, got {array.dtype}")
        height, width = array.shape[:2]
        if width <= 0 or height <= 0:
            raise InvalidArgumentError("Image must not be empty")
        return cls(
            data=np.ascontiguousarray(array),
            width=width,
            height=height,
            image_format=_CHANNELS_TO_FORMAT[array.shape[2]],
        )


@dataclass(frozen=True)
class ValueRange:
    """Numeric range that pixel values [0, 255] are mapped onto in a tensor."""

    kind: Literal["float", "uint"]
    min: float
    max: float

    def __post_init__(self) -> None:
        if not self.min < self.max:
            raise InvalidArgumentError(f"Value range must satisfy min < max, got [{self.min}, {self.max}]")
        if self.kind == "uint" and (self.min < 0 or self.max > 255):
            raise InvalidArgumentError(f"uint value range must lie within [0, 255], got [{self.min}, {self.max}]")

    @classmethod
    def float_range(cls, lo: float, hi: float) -> ValueRange:
        return cls(kind="float", min=float(lo), max=float(hi))

    @classmethod
    def uint_range(cls, lo: int, hi: int) -> ValueRange:
        return cls(kind="uint", min=int(lo), max=int(hi))

    @property
    def dtype(self) -> type[np.generic]:
        return np.float32 if self.kind == "float" else np.uint8

    def from_pixels(self, pixels: NDArray[np.uint8]) -> NDArray[Any]:
        """Map uint8 pixel values onto this range."""
        scaled = pixels.astype(np.float32) * np.float32((self.max - self.min) / 255.0) + np.float32(self.min)
        if self.kind == "uint":
            return np.clip(np.rint(scaled), 0, 255).astype(np.uint8)
        return scaled

    def to_pixels(self, values: NDArray[Any]) -> NDArray[np.uint8]:
        """Map values in this range back onto uint8 pixels, clamping outliers."""
        unit = (values.astype(np.float32) - np.float32(self.min)) / np.float32(self.max - self.min)
        return np.clip(np.rint(unit * 255.0), 0, 255).astype(np.uint8)


@dataclass(frozen=True)
class Tensor:
    """An HxWxC model tensor together with the range its values live in."""

    data: NDArray[Any]
    value_range: ValueRange

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)
