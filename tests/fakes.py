"""Test doubles for the landmark sub-pipeline and the stylizer model."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import numpy as np

from facestylizer.ml.image import Image
from facestylizer.ml.region import NormalizedLandmark

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facestylizer.ml.geometry import NormalizedRect
    from facestylizer.ml.region import LandmarkSet

MESH_SIZE = 478


def face_landmarks(
    left_eye: tuple[float, float] = (112.0, 125.0),
    right_eye: tuple[float, float] = (144.0, 125.0),
    mouth: tuple[float, float] = (128.0, 155.0),
    image_size: tuple[int, int] = (256, 256),
) -> list[NormalizedLandmark]:
    """A face mesh whose eye and mouth corners sit at the given pixel positions.

    The defaults yield an upright 128 px square region centered on a 256x256 frame.
    """
    width, height = image_size
    points = [NormalizedLandmark(x=0.5, y=0.5) for _ in range(MESH_SIZE)]
    for indices, (x, y) in (((33, 133), left_eye), ((263, 362), right_eye), ((61, 291), mouth)):
        for index in indices:
            points[index] = NormalizedLandmark(x=x / width, y=y / height)
    return points


def gradient_image(width: int = 256, height: int = 256) -> Image:
    """A smooth RGB test frame."""
    ys, xs = np.mgrid[0:height, 0:width]
    pixels = np.stack(
        [
            xs * 255 // max(width - 1, 1),
            ys * 255 // max(height - 1, 1),
            (xs + ys) * 255 // max(width + height - 2, 1),
        ],
        axis=-1,
    ).astype(np.uint8)
    return Image.from_array(pixels)


class FakeLandmarker:
    """Returns canned landmark sets and records what it was asked."""

    def __init__(
        self,
        landmark_sets: list[LandmarkSet] | None = None,
        *,
        per_call: list[list[LandmarkSet]] | None = None,
        num_faces: int = 1,
    ) -> None:
        self._landmark_sets = [face_landmarks()] if landmark_sets is None else landmark_sets
        self._per_call = per_call
        self._num_faces = num_faces
        self._lock = threading.Lock()
        self.regions: list[NormalizedRect] = []
        self.timestamps: list[int | None] = []
        self.closed = False

    @property
    def num_faces(self) -> int:
        return self._num_faces

    def detect(self, image: Image, region: NormalizedRect, timestamp_ms: int | None = None) -> list[LandmarkSet]:
        with self._lock:
            self.regions.append(region)
            self.timestamps.append(timestamp_ms)
            if self._per_call:
                return list(self._per_call.pop(0))
            return list(self._landmark_sets)

    def close(self) -> None:
        self.closed = True


class IdentityOperator:
    """A stylizer model that returns its input unchanged."""

    def __init__(
        self,
        input_shape: tuple[int, int, int] = (128, 128, 3),
        input_dtype: type[np.generic] = np.float32,
        output_shape: tuple[int | None, int | None, int | None] | None = None,
        output_dtype: type[np.generic] | None = None,
    ) -> None:
        self.input_shape = input_shape
        self.input_dtype = input_dtype
        self.output_shape = input_shape if output_shape is None else output_shape
        self.output_dtype = input_dtype if output_dtype is None else output_dtype
        self.calls = 0
        self.last_input: NDArray[np.generic] | None = None

    def run(self, tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        self.calls += 1
        self.last_input = tensor.copy()
        return tensor.copy()


class HalfSizeOperator(IdentityOperator):
    """A model with dynamic output dimensions that halves its input."""

    def __init__(self) -> None:
        super().__init__(output_shape=(None, None, 3))

    def run(self, tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        return super().run(tensor)[::2, ::2]
