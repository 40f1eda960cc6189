"""Shared pytest fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import pytest

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture()
def no_opencl() -> Iterator[None]:
    """Force UMat operators onto the CPU kernels so both paths compute identical pixels."""
    previous = cv2.ocl.useOpenCL()
    cv2.ocl.setUseOpenCL(False)
    yield
    cv2.ocl.setUseOpenCL(previous)
