"""Affine transforms and normalized rectangles.

Coordinates are continuous: an image of width W and height H spans
``[0, W] x [0, H]`` with pixel ``(i, j)`` centered at ``(i + 0.5, j + 0.5)``.
Rotations are in radians and turn clockwise on screen (y axis points down).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import numpy as np

from facestylizer.errors import DegenerateTransformError, InvalidArgumentError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

# Smallest |det| of the linear part that is still considered invertible.
DEGENERATE_DETERMINANT: float = 1e-12


@dataclass(frozen=True, eq=False)
class AffineTransform:
    """A 2D affine mapping stored as a 3x3 homogeneous matrix."""

    matrix: NDArray[np.float64]

    def __post_init__(self) -> None:
        if self.matrix.shape != (3, 3):
            raise InvalidArgumentError(f"Affine matrix must be 3x3, got {self.matrix.shape}")
        if not np.allclose(self.matrix[2], (0.0, 0.0, 1.0)):
            raise InvalidArgumentError("Affine matrix must have a last row of (0, 0, 1)")

    # -- Construction -------------------------------------------------------

    @classmethod
    def from_matrix(cls, matrix: ArrayLike) -> AffineTransform:
        """Build from a 2x3 or 3x3 matrix."""
        m = np.asarray(matrix, dtype=np.float64)
        if m.shape == (2, 3):
            m = np.vstack([m, (0.0, 0.0, 1.0)])
        return cls(m.copy())

    @classmethod
    def identity(cls) -> AffineTransform:
        return cls(np.eye(3))

    @classmethod
    def translation(cls, tx: float, ty: float) -> AffineTransform:
        return cls.from_matrix([[1.0, 0.0, tx], [0.0, 1.0, ty]])

    @classmethod
    def scaling(cls, sx: float, sy: float) -> AffineTransform:
        return cls.from_matrix([[sx, 0.0, 0.0], [0.0, sy, 0.0]])

    @classmethod
    def rotation(cls, angle: float) -> AffineTransform:
        c, s = math.cos(angle), math.sin(angle)
        return cls.from_matrix([[c, -s, 0.0], [s, c, 0.0]])

    # -- Algebra ------------------------------------------------------------

    def __matmul__(self, other: AffineTransform) -> AffineTransform:
        """``a @ b`` applies ``b`` first, then ``a``."""
        return AffineTransform(self.matrix @ other.matrix)

    @property
    def determinant(self) -> float:
        return float(np.linalg.det(self.matrix[:2, :2]))

    def inverse(self) -> AffineTransform:
        """Return the inverse mapping.

        Raises:
            DegenerateTransformError: If the linear part is singular.
        """
        if not math.isfinite(self.determinant) or abs(self.determinant) < DEGENERATE_DETERMINANT:
            raise DegenerateTransformError(f"Transform is not invertible (det={self.determinant:.3g})")
        inverse = np.linalg.inv(self.matrix)
        inverse[2] = (0.0, 0.0, 1.0)
        return AffineTransform(inverse)

    def apply(self, points: ArrayLike) -> NDArray[np.float64]:
        """Map an (N, 2) array of points."""
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        return pts @ self.matrix[:2, :2].T + self.matrix[:2, 2]

    def allclose(self, other: AffineTransform, atol: float = 1e-9) -> bool:
        return bool(np.allclose(self.matrix, other.matrix, atol=atol))

    # -- Conversions --------------------------------------------------------

    def as_2x3(self) -> NDArray[np.float64]:
        return self.matrix[:2].copy()

    def to_pixel_centers(self) -> AffineTransform:
        """Re-express the mapping on pixel indices instead of continuous coordinates.

        OpenCV resamplers address pixel ``i`` at coordinate ``i``; this module
        places it at ``i + 0.5``.
        """
        return AffineTransform.translation(-0.5, -0.5) @ self @ AffineTransform.translation(0.5, 0.5)

    def normalized(self, src_size: tuple[int, int], dst_size: tuple[int, int]) -> AffineTransform:
        """Re-express a pixel-space mapping on normalized [0, 1] coordinates."""
        to_src_pixels = AffineTransform.scaling(src_size[0], src_size[1])
        to_dst_unit = AffineTransform.scaling(1.0 / dst_size[0], 1.0 / dst_size[1])
        return to_dst_unit @ self @ to_src_pixels


@dataclass(frozen=True)
class NormalizedRect:
    """A rotated rectangle in normalized image coordinates."""

    x_center: float
    y_center: float
    width: float
    height: float
    rotation: float = 0.0

    @classmethod
    def full_frame(cls) -> NormalizedRect:
        return cls(x_center=0.5, y_center=0.5, width=1.0, height=1.0)

    def to_pixels(self, image_size: tuple[int, int]) -> tuple[float, float, float, float]:
        """Return (cx, cy, w, h) in pixel units for an image of (width, height)."""
        image_width, image_height = image_size
        return (
            self.x_center * image_width,
            self.y_center * image_height,
            self.width * image_width,
            self.height * image_height,
        )


def strip_rotation(rect: NormalizedRect) -> NormalizedRect:
    """Return the same rectangle with its rotation zeroed."""
    return replace(rect, rotation=0.0)


def rect_to_transform(
    rect: NormalizedRect,
    image_size: tuple[int, int],
    output_size: tuple[int, int],
    *,
    keep_aspect_ratio: bool,
) -> AffineTransform:
    """Build the mapping from image pixels onto an output grid covering ``rect``.

    With ``keep_aspect_ratio`` the rectangle is first grown along one axis so
    that its aspect ratio matches the output grid; content is never stretched
    and the added margin samples whatever lies around the rectangle.

    Raises:
        DegenerateTransformError: If the rectangle has no extent.
    """
    out_width, out_height = output_size
    cx, cy, w, h = rect.to_pixels(image_size)
    if not (w > 0 and h > 0):
        raise DegenerateTransformError(f"Region has no extent ({w:.3g}x{h:.3g} px)")

    if keep_aspect_ratio:
        output_aspect = out_height / out_width
        if h / w > output_aspect:
            w = h / output_aspect
        else:
            h = w * output_aspect

    return (
        AffineTransform.translation(out_width / 2.0, out_height / 2.0)
        @ AffineTransform.scaling(out_width / w, out_height / h)
        @ AffineTransform.rotation(-rect.rotation)
        @ AffineTransform.translation(-cx, -cy)
    )
