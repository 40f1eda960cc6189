"""Tests for the ONNX stylizer inference operator."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest

from facestylizer.errors import InvalidArgumentError
from facestylizer.ml.stylizer_model import OnnxInferenceOperator


def _make_session(
    input_shape: list[object],
    output_shape: list[object] | None = None,
    input_type: str = "tensor(float)",
    output_type: str = "tensor(float)",
) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input", shape=input_shape, type=input_type)]
    session.get_outputs.return_value = [
        SimpleNamespace(name="output", shape=output_shape or input_shape, type=output_type)
    ]
    return session


class TestOnnxInferenceOperator:
    def test_nhwc_model(self) -> None:
        session = _make_session([1, 256, 192, 3])
        session.run.return_value = [np.ones((1, 256, 192, 3), dtype=np.float32)]
        op = OnnxInferenceOperator(session)

        assert op.input_shape == (256, 192, 3)
        assert op.input_dtype is np.float32
        out = op.run(np.zeros((256, 192, 3), dtype=np.float32))

        fed = session.run.call_args.args[1]["input"]
        assert fed.shape == (1, 256, 192, 3)
        assert out.shape == (256, 192, 3)

    def test_nchw_model_is_transposed(self) -> None:
        session = _make_session([1, 3, 4, 5])
        session.run.side_effect = lambda names, feeds: [feeds["input"] * 2]
        op = OnnxInferenceOperator(session)

        assert op.input_shape == (4, 5, 3)
        tensor = np.arange(60, dtype=np.float32).reshape(4, 5, 3)
        out = op.run(tensor)

        fed = session.run.call_args.args[1]["input"]
        assert fed.shape == (1, 3, 4, 5)
        np.testing.assert_array_equal(out, tensor * 2)

    def test_dynamic_batch_is_allowed(self) -> None:
        op = OnnxInferenceOperator(_make_session(["batch", 128, 128, 3]))
        assert op.input_shape == (128, 128, 3)

    def test_dynamic_spatial_input_is_rejected(self) -> None:
        with pytest.raises(InvalidArgumentError, match="fixed size"):
            OnnxInferenceOperator(_make_session([1, "height", "width", 3]))

    def test_dynamic_output_is_reported_as_unknown(self) -> None:
        op = OnnxInferenceOperator(_make_session([1, 128, 128, 3], output_shape=[1, "h", "w", "c"]))
        assert op.output_shape is None

    def test_uint8_model(self) -> None:
        op = OnnxInferenceOperator(_make_session([1, 64, 64, 3], input_type="tensor(uint8)", output_type="tensor(uint8)"))
        assert op.input_dtype is np.uint8
        assert op.output_dtype is np.uint8

    def test_unsupported_input_type(self) -> None:
        with pytest.raises(InvalidArgumentError, match="Unsupported"):
            OnnxInferenceOperator(_make_session([1, 64, 64, 3], input_type="tensor(double)"))

    def test_rank_mismatch_in_output(self) -> None:
        session = _make_session([1, 8, 8, 3])
        session.run.return_value = [np.zeros((8, 8, 3), dtype=np.float32)]
        with pytest.raises(InvalidArgumentError, match="rank-4"):
            OnnxInferenceOperator(session).run(np.zeros((8, 8, 3), dtype=np.float32))
