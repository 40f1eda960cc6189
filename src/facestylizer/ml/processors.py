"""Preprocessing and postprocessing stages around the stylizer model.

Preprocessing resamples the face region into the model's input tensor and
records the forward transform (original image pixels -> tensor pixels).
Postprocessing turns the model output back into an image, inverts that same
transform and warps the result into the original frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from facestylizer.errors import InvalidArgumentError
from facestylizer.ml.geometry import rect_to_transform, strip_rotation
from facestylizer.ml.image import Tensor, ValueRange

if TYPE_CHECKING:
    from facestylizer.ml.backends import ImageBackend
    from facestylizer.ml.geometry import AffineTransform, NormalizedRect
    from facestylizer.ml.image import Image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreprocessingConfig:
    """Shape and value range of the model input tensor."""

    output_width: int
    output_height: int
    channels: int = 3
    value_range: ValueRange = field(default_factory=lambda: ValueRange.float_range(0.0, 1.0))
    keep_aspect_ratio: bool = True

    def __post_init__(self) -> None:
        if self.output_width <= 0 or self.output_height <= 0:
            raise InvalidArgumentError(
                f"Output tensor dimensions must be positive, got {self.output_width}x{self.output_height}"
            )
        if self.channels not in (1, 3, 4):
            raise InvalidArgumentError(f"Output tensor must have 1, 3 or 4 channels, got {self.channels}")

    @property
    def output_size(self) -> tuple[int, int]:
        return self.output_width, self.output_height


@dataclass(frozen=True)
class PostprocessingConfig:
    """How model output is read back and where the final crop lands."""

    value_range: ValueRange
    crop_width: int
    crop_height: int
    # Must match the preprocessing policy so the crop covers the tensor region.
    keep_aspect_ratio: bool = True

    @property
    def crop_size(self) -> tuple[int, int]:
        return self.crop_width, self.crop_height

    @classmethod
    def from_preprocessing(
        cls,
        preprocessing: PreprocessingConfig,
        float_range: tuple[float, float] = (0.0, 1.0),
    ) -> PostprocessingConfig:
        """Derive the output interpretation from the input tensor configuration.

        A float input range means the model emits floats in ``float_range``;
        a uint input range is reused as-is. The crop size is the model's
        native tensor size, over the same padded region the tensor was sampled
        from.
        """
        if preprocessing.value_range.kind == "float":
            value_range = ValueRange.float_range(*float_range)
        else:
            value_range = preprocessing.value_range
        return cls(
            value_range=value_range,
            crop_width=preprocessing.output_width,
            crop_height=preprocessing.output_height,
            keep_aspect_ratio=preprocessing.keep_aspect_ratio,
        )


class ImagePreprocessor:
    """Crop + resize + normalize a region into the model input tensor."""

    def __init__(self, config: PreprocessingConfig, backend: ImageBackend) -> None:
        self._config = config
        self._backend = backend

    @property
    def config(self) -> PreprocessingConfig:
        return self._config

    def __call__(self, image: Image, norm_rect: NormalizedRect) -> dict[str, Any]:
        on_backend = self._backend.upload(image)
        transform = rect_to_transform(
            norm_rect,
            image.size,
            self._config.output_size,
            keep_aspect_ratio=self._config.keep_aspect_ratio,
        )
        tensor = self._backend.image_to_tensor(
            on_backend,
            transform,
            self._config.output_size,
            self._config.channels,
            self._config.value_range,
        )
        return {"tensor": tensor, "matrix": transform, "image": on_backend}


class TensorsToImage:
    """Interpret model output values as pixels."""

    def __init__(self, config: PostprocessingConfig, backend: ImageBackend) -> None:
        self._config = config
        self._backend = backend

    def __call__(self, tensor: Tensor) -> dict[str, Any]:
        if tensor.value_range != self._config.value_range:
            raise InvalidArgumentError(
                f"Tensor range {tensor.value_range} does not match the configured {self._config.value_range}"
            )
        return {"image": self._backend.tensor_to_image(tensor)}


def invert_matrix(matrix: AffineTransform) -> dict[str, Any]:
    return {"matrix": matrix.inverse()}


class WarpBack:
    """Resample a tensor-space image into the full original frame."""

    def __init__(self, backend: ImageBackend) -> None:
        self._backend = backend

    def __call__(self, image: Image, matrix: AffineTransform, output_size: tuple[int, int]) -> dict[str, Any]:
        return {"image": self._backend.warp_affine(image, matrix, output_size)}


def strip_rect_rotation(norm_rect: NormalizedRect) -> dict[str, Any]:
    # The warp-back already undid the rotation; cropping must not apply it again.
    return {"norm_rect": strip_rotation(norm_rect)}


class FaceCropper:
    """Crop the unrotated face region and resize it to the model-native size."""

    def __init__(self, config: PostprocessingConfig, backend: ImageBackend) -> None:
        self._config = config
        self._backend = backend

    def __call__(self, image: Image, norm_rect: NormalizedRect) -> dict[str, Any]:
        cropped = self._backend.crop(
            image,
            norm_rect,
            self._config.crop_size,
            keep_aspect_ratio=self._config.keep_aspect_ratio,
        )
        return {"image": cropped}
