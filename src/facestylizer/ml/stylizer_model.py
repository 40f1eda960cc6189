"""Stylizer inference operator.

The pipeline treats the model as opaque: one HxWxC tensor in, one HxWxC
tensor out. Shapes are declared up front so the pipeline can size its
tensors and reject incompatible models while it is being assembled.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facestylizer.errors import InvalidArgumentError

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)

_ORT_DTYPES: dict[str, type[np.generic]] = {
    "tensor(float)": np.float32,
    "tensor(uint8)": np.uint8,
}

Shape = tuple[int | None, int | None, int | None]


class InferenceOperator(Protocol):
    """Protocol for the stylization model."""

    @property
    def input_shape(self) -> tuple[int, int, int]:
        """Fixed (height, width, channels) of the input tensor."""
        ...

    @property
    def input_dtype(self) -> type[np.generic]:
        """numpy dtype of the input tensor."""
        ...

    @property
    def output_shape(self) -> Shape | None:
        """(height, width, channels) of the output, None for dynamic dims or unknown rank."""
        ...

    @property
    def output_dtype(self) -> type[np.generic] | None:
        """numpy dtype of the output tensor, if known."""
        ...

    def run(self, tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        """Run the model on one HxWxC tensor and return one HxWxC tensor."""
        ...


def _dim(value: object) -> int | None:
    return value if isinstance(value, int) and value > 0 else None


def _channels_last(shape: list[object]) -> bool:
    """Guess the layout of an NHWC or NCHW tensor shape."""
    if len(shape) != 4:
        raise InvalidArgumentError(f"Expected a rank-4 model tensor, got shape {shape}")
    if _dim(shape[3]) in (1, 3, 4):
        return True
    if _dim(shape[1]) in (1, 3, 4):
        return False
    raise InvalidArgumentError(f"Cannot infer the channel axis of model tensor shape {shape}")


def _to_hwc(shape: list[object], channels_last: bool) -> Shape:
    if channels_last:
        return _dim(shape[1]), _dim(shape[2]), _dim(shape[3])
    return _dim(shape[2]), _dim(shape[3]), _dim(shape[1])


def _ort_dtype(type_name: str) -> type[np.generic]:
    try:
        return _ORT_DTYPES[type_name]
    except KeyError:
        raise InvalidArgumentError(f"Unsupported model tensor type: {type_name}") from None


class OnnxInferenceOperator:
    """Runs the stylizer with an ONNX Runtime session (NHWC or NCHW models)."""

    def __init__(self, session: InferenceSession) -> None:
        self._session = session
        model_input = session.get_inputs()[0]
        model_output = session.get_outputs()[0]
        self._input_name = model_input.name

        self._input_channels_last = _channels_last(list(model_input.shape))
        height, width, channels = _to_hwc(list(model_input.shape), self._input_channels_last)
        if height is None or width is None or channels is None:
            raise InvalidArgumentError(f"Model input must have a fixed size, got shape {model_input.shape}")
        self._input_shape = (height, width, channels)
        self._input_dtype = _ort_dtype(model_input.type)

        output_shape = list(model_output.shape)
        try:
            self._output_channels_last = _channels_last(output_shape)
            self._output_shape: Shape | None = _to_hwc(output_shape, self._output_channels_last)
        except InvalidArgumentError:
            # Leave the structural check to the pipeline, which knows what it can consume.
            self._output_channels_last = True
            self._output_shape = None
        self._output_dtype = _ORT_DTYPES.get(model_output.type)

        logger.info(
            "Stylizer model: input %s %s (%s), output %s",
            self._input_shape,
            np.dtype(self._input_dtype).name,
            "NHWC" if self._input_channels_last else "NCHW",
            self._output_shape,
        )

    @property
    def input_shape(self) -> tuple[int, int, int]:
        return self._input_shape

    @property
    def input_dtype(self) -> type[np.generic]:
        return self._input_dtype

    @property
    def output_shape(self) -> Shape | None:
        return self._output_shape

    @property
    def output_dtype(self) -> type[np.generic] | None:
        return self._output_dtype

    def run(self, tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        batch = tensor[np.newaxis].astype(self._input_dtype, copy=False)
        if not self._input_channels_last:
            batch = batch.transpose(0, 3, 1, 2)
        output = self._session.run(None, {self._input_name: np.ascontiguousarray(batch)})[0]
        if output.ndim != 4:
            raise InvalidArgumentError(f"Expected a rank-4 model output, got shape {output.shape}")
        if not self._output_channels_last:
            output = output.transpose(0, 2, 3, 1)
        return output[0]
