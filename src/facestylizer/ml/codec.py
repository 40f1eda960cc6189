"""Image decoding and encoding for the HTTP surface.

Decodes any format OpenCV reads into an RGB(A) uint8 image, enforcing the
configured pixel limit, and encodes results as PNG.
"""

from __future__ import annotations

import cv2
import numpy as np

from facestylizer.errors import InvalidArgumentError
from facestylizer.ml.image import Image, ImageFormat, Location


def decode_image(image_bytes: bytes, max_pixels: int) -> Image:
    """Decode raw file bytes into a CPU image.

    Raises:
        InvalidArgumentError: If the bytes cannot be decoded or the image exceeds ``max_pixels``.
    """
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    decoded = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED) if buffer.size else None
    if decoded is None:
        raise InvalidArgumentError("Could not decode image")

    height, width = decoded.shape[:2]
    if height * width > max_pixels:
        raise InvalidArgumentError(f"Image has {height * width} pixels, the limit is {max_pixels}")

    if decoded.dtype == np.uint16:
        decoded = (decoded >> 8).astype(np.uint8)
    elif decoded.dtype != np.uint8:
        raise InvalidArgumentError(f"Unsupported pixel depth {decoded.dtype}")

    if decoded.ndim == 2:
        rgb = cv2.cvtColor(decoded, cv2.COLOR_GRAY2RGB)
    elif decoded.shape[2] == 4:
        rgb = cv2.cvtColor(decoded, cv2.COLOR_BGRA2RGBA)
    else:
        rgb = cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB)
    return Image.from_array(rgb)


def encode_png(image: Image) -> bytes:
    """Encode a CPU image as PNG."""
    if image.location != Location.CPU:
        raise InvalidArgumentError("Only CPU-resident images can be encoded")
    code = cv2.COLOR_RGBA2BGRA if image.image_format == ImageFormat.SRGBA else cv2.COLOR_RGB2BGR
    ok, encoded = cv2.imencode(".png", cv2.cvtColor(image.data, code))
    if not ok:
        raise InvalidArgumentError("Could not encode image as PNG")
    return encoded.tobytes()
