"""CPU and GPU implementations of the low-level image operators.

Both backends resample with OpenCV using one border policy: bilinear
interpolation, constant zero outside the source. The GPU backend keeps pixels
in ``cv2.UMat`` buffers so OpenCV's transparent API can dispatch to an OpenCL
device; it falls back to the CPU kernels when no device is available.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import cv2
import numpy as np

from facestylizer.errors import InvalidArgumentError
from facestylizer.ml.geometry import rect_to_transform
from facestylizer.ml.image import Image, ImageFormat, Location, Tensor

if TYPE_CHECKING:
    from facestylizer.ml.geometry import AffineTransform, NormalizedRect
    from facestylizer.ml.image import ValueRange

INTERPOLATION: int = cv2.INTER_LINEAR
BORDER_MODE: int = cv2.BORDER_CONSTANT
BORDER_VALUE: tuple[int, int, int, int] = (0, 0, 0, 0)

_FORMATS = {3: ImageFormat.SRGB, 4: ImageFormat.SRGBA}


class ImageBackend(Protocol):
    """Protocol for the image operators used by the processing stages."""

    @property
    def location(self) -> Location:
        """Where images handled by this backend live."""
        ...

    def upload(self, image: Image) -> Image:
        """Move a CPU image to this backend's location."""
        ...

    def download(self, image: Image) -> Image:
        """Return a CPU copy of an image produced by this backend."""
        ...

    def image_to_tensor(
        self,
        image: Image,
        transform: AffineTransform,
        size: tuple[int, int],
        channels: int,
        value_range: ValueRange,
    ) -> Tensor:
        """Resample ``image`` through ``transform`` into a (width, height) tensor."""
        ...

    def tensor_to_image(self, tensor: Tensor) -> Image:
        """Convert a tensor back into pixels on this backend."""
        ...

    def warp_affine(self, image: Image, transform: AffineTransform, size: tuple[int, int]) -> Image:
        """Resample ``image`` through ``transform`` onto a (width, height) grid."""
        ...

    def crop(
        self,
        image: Image,
        rect: NormalizedRect,
        size: tuple[int, int],
        *,
        keep_aspect_ratio: bool = False,
    ) -> Image:
        """Crop an axis-aligned ``rect`` and resize it to (width, height).

        With ``keep_aspect_ratio`` the rect is padded to the output aspect ratio
        the same way the input tensor region is.
        """
        ...


def _warp(src: Any, transform: AffineTransform, size: tuple[int, int]) -> Any:
    return cv2.warpAffine(
        src,
        transform.to_pixel_centers().as_2x3(),
        size,
        flags=INTERPOLATION,
        borderMode=BORDER_MODE,
        borderValue=BORDER_VALUE,
    )


def _convert_channels(src: Any, have: int, want: int) -> Any:
    if have == want:
        return src
    if have == 4 and want == 3:
        return cv2.cvtColor(src, cv2.COLOR_RGBA2RGB)
    if have == 3 and want == 4:
        return cv2.cvtColor(src, cv2.COLOR_RGB2RGBA)
    if want == 1:
        return cv2.cvtColor(src, cv2.COLOR_RGBA2GRAY if have == 4 else cv2.COLOR_RGB2GRAY)
    raise InvalidArgumentError(f"Cannot convert {have}-channel image to {want} channels")


def _tensor_pixels(tensor: Tensor) -> np.ndarray:
    data = tensor.data
    if data.ndim != 3 or data.shape[2] not in (1, 3, 4):
        raise InvalidArgumentError(f"Expected an HxWxC tensor with 1, 3 or 4 channels, got shape {data.shape}")
    pixels = tensor.value_range.to_pixels(data)
    if pixels.shape[2] == 1:
        pixels = np.repeat(pixels, 3, axis=2)
    return np.ascontiguousarray(pixels)


class _BaseBackend:
    location: Location

    def _check(self, image: Image) -> None:
        if image.location != self.location:
            raise InvalidArgumentError(
                f"{type(self).__name__} received a {image.location}-resident image; "
                "CPU and GPU paths cannot be mixed in one pipeline"
            )

    def _wrap(self, data: Any, size: tuple[int, int], image_format: ImageFormat) -> Image:
        return Image(data=data, width=size[0], height=size[1], image_format=image_format, location=self.location)

    def _pixels(self, data: Any) -> np.ndarray:
        raise NotImplementedError

    def warp_affine(self, image: Image, transform: AffineTransform, size: tuple[int, int]) -> Image:
        self._check(image)
        return self._wrap(_warp(image.data, transform, size), size, image.image_format)

    def image_to_tensor(
        self,
        image: Image,
        transform: AffineTransform,
        size: tuple[int, int],
        channels: int,
        value_range: ValueRange,
    ) -> Tensor:
        self._check(image)
        src = _convert_channels(image.data, image.channels, channels)
        warped = self._pixels(_warp(src, transform, size))
        if warped.ndim == 2:
            warped = warped[:, :, np.newaxis]
        return Tensor(data=value_range.from_pixels(warped), value_range=value_range)

    def crop(
        self,
        image: Image,
        rect: NormalizedRect,
        size: tuple[int, int],
        *,
        keep_aspect_ratio: bool = False,
    ) -> Image:
        if rect.rotation != 0.0:
            raise InvalidArgumentError("Crop regions must be axis-aligned; strip the rotation first")
        transform = rect_to_transform(rect, image.size, size, keep_aspect_ratio=keep_aspect_ratio)
        return self.warp_affine(image, transform, size)


class CpuImageBackend(_BaseBackend):
    """Operators on numpy arrays in host memory."""

    location = Location.CPU

    def upload(self, image: Image) -> Image:
        self._check(image)
        return image

    def download(self, image: Image) -> Image:
        self._check(image)
        return image

    def _pixels(self, data: Any) -> np.ndarray:
        return np.asarray(data)

    def tensor_to_image(self, tensor: Tensor) -> Image:
        pixels = _tensor_pixels(tensor)
        height, width, channels = pixels.shape
        return self._wrap(pixels, (width, height), _FORMATS[channels])


class GpuImageBackend(_BaseBackend):
    """Operators on ``cv2.UMat`` buffers."""

    location = Location.GPU

    def upload(self, image: Image) -> Image:
        if image.location == Location.GPU:
            return image
        return self._wrap(cv2.UMat(image.data), image.size, image.image_format)

    def download(self, image: Image) -> Image:
        self._check(image)
        return Image(
            data=np.ascontiguousarray(image.data.get()),
            width=image.width,
            height=image.height,
            image_format=image.image_format,
            location=Location.CPU,
        )

    def _pixels(self, data: Any) -> np.ndarray:
        return data.get()

    def tensor_to_image(self, tensor: Tensor) -> Image:
        pixels = _tensor_pixels(tensor)
        height, width, channels = pixels.shape
        return self._wrap(cv2.UMat(pixels), (width, height), _FORMATS[channels])


def select_backend(use_gpu: bool) -> ImageBackend:
    """Return the backend for the chosen execution path."""
    return GpuImageBackend() if use_gpu else CpuImageBackend()
