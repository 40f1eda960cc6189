"""Face region selection from landmarks."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from facestylizer.errors import InvalidArgumentError, LandmarkCountError
from facestylizer.ml.geometry import NormalizedRect


@dataclass(frozen=True)
class NormalizedLandmark:
    """A landmark in normalized image coordinates."""

    x: float
    y: float
    z: float = 0.0


LandmarkSet = Sequence[NormalizedLandmark]


@dataclass(frozen=True)
class LandmarkSelection:
    """Which landmarks anchor the face region, and how the region is sized.

    Defaults follow the 478-point face mesh: eye corners 33/133 and 263/362,
    mouth corners 61/291. The scales reproduce the FFHQ alignment crop.
    """

    left_eye: tuple[int, int] = (33, 133)
    right_eye: tuple[int, int] = (263, 362)
    mouth: tuple[int, int] = (61, 291)
    eye_to_eye_scale: float = 2.0
    eye_to_mouth_scale: float = 1.8
    center_shift: float = 0.1

    @property
    def indices(self) -> tuple[int, ...]:
        return (*self.left_eye, *self.right_eye, *self.mouth)


DEFAULT_LANDMARK_SELECTION = LandmarkSelection()


def select_single_face(landmark_sets: Sequence[LandmarkSet]) -> LandmarkSet | None:
    """Return the only landmark set of a frame, or None when no face was found.

    Raises:
        LandmarkCountError: If the frame carries more than one landmark set.
    """
    if len(landmark_sets) == 0:
        return None
    if len(landmark_sets) > 1:
        raise LandmarkCountError(f"Expected at most one face per frame, got {len(landmark_sets)}")
    return landmark_sets[0]


def _mean_point(landmarks: LandmarkSet, indices: Sequence[int], image_size: tuple[int, int]) -> np.ndarray:
    width, height = image_size
    pts = [(landmarks[i].x * width, landmarks[i].y * height) for i in indices]
    return np.mean(np.asarray(pts, dtype=np.float64), axis=0)


def landmarks_to_rect(
    landmarks: LandmarkSet,
    image_size: tuple[int, int],
    selection: LandmarkSelection = DEFAULT_LANDMARK_SELECTION,
) -> NormalizedRect:
    """Compute the rotated square face region for one landmark set.

    The region is square in pixels, oriented along the eye line (corrected by
    the eye-to-mouth direction) and centered slightly below the eyes.

    Raises:
        InvalidArgumentError: If the landmark set lacks a selected index.
    """
    needed = max(selection.indices) + 1
    if len(landmarks) < needed:
        raise InvalidArgumentError(f"Landmark set has {len(landmarks)} points, region selection needs {needed}")

    left_eye = _mean_point(landmarks, selection.left_eye, image_size)
    right_eye = _mean_point(landmarks, selection.right_eye, image_size)
    mouth = _mean_point(landmarks, selection.mouth, image_size)

    eye_center = (left_eye + right_eye) / 2.0
    eye_to_eye = right_eye - left_eye
    eye_to_mouth = mouth - eye_center

    # Perpendicular of eye_to_mouth, pointing the same way as eye_to_eye.
    axis = eye_to_eye + np.array([eye_to_mouth[1], -eye_to_mouth[0]])
    axis_norm = float(np.hypot(*axis))
    if axis_norm == 0.0:
        # Collapsed landmarks; emit a zero-size region and let the transform reject it.
        axis = np.array([1.0, 0.0])
        axis_norm = 1.0
    half_side = max(
        float(np.hypot(*eye_to_eye)) * selection.eye_to_eye_scale,
        float(np.hypot(*eye_to_mouth)) * selection.eye_to_mouth_scale,
    )
    center = eye_center + eye_to_mouth * selection.center_shift
    side = 2.0 * half_side

    width, height = image_size
    return NormalizedRect(
        x_center=float(center[0]) / width,
        y_center=float(center[1]) / height,
        width=side / width,
        height=side / height,
        rotation=math.atan2(axis[1] / axis_norm, axis[0] / axis_norm),
    )
