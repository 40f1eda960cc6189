"""Tests for face region selection."""

from __future__ import annotations

import math

import numpy as np
import pytest
from fakes import face_landmarks

from facestylizer.errors import InvalidArgumentError, LandmarkCountError
from facestylizer.ml.region import DEFAULT_LANDMARK_SELECTION, LandmarkSelection, landmarks_to_rect, select_single_face


def _rotate(point: tuple[float, float], angle: float, pivot: tuple[float, float] = (128.0, 128.0)) -> tuple[float, float]:
    c, s = math.cos(angle), math.sin(angle)
    dx, dy = point[0] - pivot[0], point[1] - pivot[1]
    return pivot[0] + c * dx - s * dy, pivot[1] + s * dx + c * dy


class TestSelectSingleFace:
    def test_no_face_yields_none(self) -> None:
        assert select_single_face([]) is None

    def test_one_face_is_returned(self) -> None:
        face = face_landmarks()
        assert select_single_face([face]) is face

    def test_two_faces_are_rejected(self) -> None:
        with pytest.raises(LandmarkCountError):
            select_single_face([face_landmarks(), face_landmarks()])


class TestLandmarksToRect:
    def test_upright_face(self) -> None:
        rect = landmarks_to_rect(face_landmarks(), (256, 256))
        assert rect.x_center == pytest.approx(0.5)
        assert rect.y_center == pytest.approx(0.5)
        assert rect.width == pytest.approx(0.5)
        assert rect.height == pytest.approx(0.5)
        assert rect.rotation == pytest.approx(0.0)

    def test_region_is_square_in_pixels(self) -> None:
        rect = landmarks_to_rect(
            face_landmarks((212.0, 125.0), (244.0, 125.0), (228.0, 155.0), image_size=(512, 256)),
            (512, 256),
        )
        assert rect.width * 512 == pytest.approx(rect.height * 256)

    def test_mouth_distance_can_dominate_size(self) -> None:
        rect = landmarks_to_rect(face_landmarks(mouth=(128.0, 175.0)), (256, 256))
        # Eye-to-mouth 50 px * 1.8 exceeds eye-to-eye 32 px * 2.
        assert rect.width * 256 == pytest.approx(2 * 90.0)

    @pytest.mark.parametrize("angle", [0.4, -0.9, math.pi / 2])
    def test_rotation_follows_the_face(self, angle: float) -> None:
        landmarks = face_landmarks(
            _rotate((112.0, 125.0), angle),
            _rotate((144.0, 125.0), angle),
            _rotate((128.0, 155.0), angle),
        )
        rect = landmarks_to_rect(landmarks, (256, 256))
        assert rect.rotation == pytest.approx(angle)
        assert rect.width == pytest.approx(0.5)
        assert (rect.x_center, rect.y_center) == pytest.approx((0.5, 0.5))

    def test_custom_selection(self) -> None:
        selection = LandmarkSelection(left_eye=(0, 0), right_eye=(1, 1), mouth=(2, 2))
        landmarks = [face_landmarks()[33], face_landmarks()[263], face_landmarks()[61]]
        rect = landmarks_to_rect(landmarks, (256, 256), selection)
        assert rect.width == pytest.approx(0.5)

    def test_short_landmark_set_is_rejected(self) -> None:
        with pytest.raises(InvalidArgumentError):
            landmarks_to_rect(face_landmarks()[:100], (256, 256))

    def test_default_indices(self) -> None:
        assert set(DEFAULT_LANDMARK_SELECTION.indices) == {33, 133, 263, 362, 61, 291}
        assert np.max(DEFAULT_LANDMARK_SELECTION.indices) < 478
