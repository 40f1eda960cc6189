"""Face landmark sub-pipeline.

Implementation: MediaPipe Tasks FaceLandmarker (face detector + face mesh).
"""

from __future__ import annotations

import io
import logging
import math
import threading
import zipfile
from typing import TYPE_CHECKING, Protocol

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from facestylizer.errors import InvalidArgumentError
from facestylizer.ml.image import ImageFormat, Location
from facestylizer.ml.region import NormalizedLandmark

if TYPE_CHECKING:
    from facestylizer.ml.geometry import NormalizedRect
    from facestylizer.ml.image import Image
    from facestylizer.ml.region import LandmarkSet

logger = logging.getLogger(__name__)

FACE_DETECTOR_FILE = "face_detector.tflite"
FACE_LANDMARKS_DETECTOR_FILE = "face_landmarks_detector.tflite"


class LandmarkerOptions(BaseModel):
    """Options forwarded to the landmark sub-pipeline."""

    model_config = ConfigDict(frozen=True)

    # None: unset; the pipeline pins it to one.
    num_faces: int | None = None
    min_face_detection_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    min_face_presence_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    min_tracking_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    use_stream_mode: bool = False
    use_gpu: bool = False


class FaceLandmarker(Protocol):
    """Protocol for the landmark sub-pipeline."""

    @property
    def num_faces(self) -> int:
        """Maximum number of faces the detector is configured to report."""
        ...

    def detect(self, image: Image, region: NormalizedRect, timestamp_ms: int | None = None) -> list[LandmarkSet]:
        """Detect face landmarks inside ``region`` of a CPU image.

        Returns:
            One landmark set per detected face, in full-image normalized coordinates.
        """
        ...

    def close(self) -> None:
        """Release detector resources."""
        ...


def build_landmarker_bundle(face_detector: bytes, face_landmarks_detector: bytes) -> bytes:
    """Pack the two detector models into an in-memory FaceLandmarker task bundle."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as bundle:
        bundle.writestr(FACE_DETECTOR_FILE, face_detector)
        bundle.writestr(FACE_LANDMARKS_DETECTOR_FILE, face_landmarks_detector)
    return buffer.getvalue()


def region_pixel_box(region: NormalizedRect, image_size: tuple[int, int]) -> tuple[int, int, int, int]:
    """Axis-aligned pixel box (x0, y0, x1, y1) bounding a rotated region, clipped to the image."""
    width, height = image_size
    cx, cy, rect_w, rect_h = region.to_pixels(image_size)
    cos, sin = abs(math.cos(region.rotation)), abs(math.sin(region.rotation))
    w = rect_w * cos + rect_h * sin
    h = rect_w * sin + rect_h * cos
    x0 = int(np.clip(np.floor(cx - w / 2.0), 0, width))
    y0 = int(np.clip(np.floor(cy - h / 2.0), 0, height))
    x1 = int(np.clip(np.ceil(cx + w / 2.0), 0, width))
    y1 = int(np.clip(np.ceil(cy + h / 2.0), 0, height))
    return x0, y0, x1, y1


class MediaPipeFaceLandmarker:
    """Runs MediaPipe's FaceLandmarker task on CPU images.

    The task does not accept a region of interest, so the region's bounding
    box is cropped first and landmarks are mapped back into the full frame.
    """

    def __init__(self, face_detector: bytes, face_landmarks_detector: bytes, options: LandmarkerOptions) -> None:
        if options.num_faces != 1:
            raise InvalidArgumentError("Face stylizer currently only supports one face.")

        from mediapipe.tasks.python import BaseOptions
        from mediapipe.tasks.python import vision

        self._options = options
        delegate = BaseOptions.Delegate.GPU if options.use_gpu else BaseOptions.Delegate.CPU
        task_options = vision.FaceLandmarkerOptions(
            base_options=BaseOptions(
                model_asset_buffer=build_landmarker_bundle(face_detector, face_landmarks_detector),
                delegate=delegate,
            ),
            running_mode=vision.RunningMode.VIDEO if options.use_stream_mode else vision.RunningMode.IMAGE,
            num_faces=options.num_faces,
            min_face_detection_confidence=options.min_face_detection_confidence,
            min_face_presence_confidence=options.min_face_presence_confidence,
            min_tracking_confidence=options.min_tracking_confidence,
        )
        self._landmarker = vision.FaceLandmarker.create_from_options(task_options)
        # The task object is not safe to call from several threads at once.
        self._lock = threading.Lock()
        logger.info(
            "FaceLandmarker ready (stream_mode=%s, delegate=%s)",
            options.use_stream_mode,
            "gpu" if options.use_gpu else "cpu",
        )

    @property
    def num_faces(self) -> int:
        return 1

    def detect(self, image: Image, region: NormalizedRect, timestamp_ms: int | None = None) -> list[LandmarkSet]:
        import mediapipe as mp

        if image.location != Location.CPU:
            raise InvalidArgumentError("FaceLandmarker expects a CPU-resident image")
        x0, y0, x1, y1 = region_pixel_box(region, image.size)
        if x1 <= x0 or y1 <= y0:
            return []
        pixels = np.ascontiguousarray(image.data[y0:y1, x0:x1])
        image_format = mp.ImageFormat.SRGBA if image.image_format == ImageFormat.SRGBA else mp.ImageFormat.SRGB
        mp_image = mp.Image(image_format=image_format, data=pixels)

        if self._options.use_stream_mode and timestamp_ms is None:
            raise InvalidArgumentError("A timestamp is required in stream mode")
        with self._lock:
            if self._options.use_stream_mode:
                result = self._landmarker.detect_for_video(mp_image, timestamp_ms)
            else:
                result = self._landmarker.detect(mp_image)

        crop_width, crop_height = x1 - x0, y1 - y0
        return [
            [
                NormalizedLandmark(
                    x=(lm.x * crop_width + x0) / image.width,
                    y=(lm.y * crop_height + y0) / image.height,
                    z=lm.z,
                )
                for lm in face
            ]
            for face in result.face_landmarks or []
        ]

    def close(self) -> None:
        self._landmarker.close()
