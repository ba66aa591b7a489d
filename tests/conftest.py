"""Shared fixtures and helpers for the test suite.

pytest discovers conftest.py automatically; fixtures defined here are
available to all test files in this directory without explicit imports.
Helper classes (EchoEngine) are imported explicitly with
`from conftest import ...`.
"""

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper, numpy_helper

from churon.descriptors import DYNAMIC_DIM, TensorDescriptor
from churon.dtypes import ElementType
from churon.engine import Engine
from churon.errors import InferenceError, RunCancelled
from churon.marshal import NativeBatch, NativeTensor


# ---------------------------------------------------------------------------
# Model builders
# ---------------------------------------------------------------------------

def save_model(graph, path) -> str:
    """Wrap a graph in a model ORT can load and write it to disk."""
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    onnx.checker.check_model(model)
    onnx.save(model, str(path))
    return str(path)


def build_linear_model(path) -> str:
    """x: float32 [1, 3] -> y = x @ W, W = [[1], [2], [3]] -> float32 [1, 1]."""
    w = numpy_helper.from_array(np.array([[1.0], [2.0], [3.0]], dtype=np.float32), "W")
    graph = helper.make_graph(
        [helper.make_node("MatMul", ["x", "W"], ["y"])],
        "linear",
        [helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 3])],
        [helper.make_tensor_value_info("y", TensorProto.FLOAT, [1, 1])],
        initializer=[w],
    )
    return save_model(graph, path)


def build_echo_model(path) -> str:
    """Three inputs with a dynamic batch dim, each echoed through Identity.

    a: float32 [batch, 3], ids: int64 [batch], text: string [batch]
    """
    graph = helper.make_graph(
        [
            helper.make_node("Identity", ["a"], ["a_out"]),
            helper.make_node("Identity", ["ids"], ["ids_out"]),
            helper.make_node("Identity", ["text"], ["text_out"]),
        ],
        "echo",
        [
            helper.make_tensor_value_info("a", TensorProto.FLOAT, ["batch", 3]),
            helper.make_tensor_value_info("ids", TensorProto.INT64, ["batch"]),
            helper.make_tensor_value_info("text", TensorProto.STRING, ["batch"]),
        ],
        [
            helper.make_tensor_value_info("a_out", TensorProto.FLOAT, ["batch", 3]),
            helper.make_tensor_value_info("ids_out", TensorProto.INT64, ["batch"]),
            helper.make_tensor_value_info("text_out", TensorProto.STRING, ["batch"]),
        ],
    )
    return save_model(graph, path)


def build_bias_model(path) -> str:
    """out = x + bias, where bias is an input with a default (overridable initializer)."""
    bias = numpy_helper.from_array(np.array([10.0, 20.0, 30.0], dtype=np.float32), "bias")
    graph = helper.make_graph(
        [helper.make_node("Add", ["x", "bias"], ["out"])],
        "bias",
        [
            helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 3]),
            helper.make_tensor_value_info("bias", TensorProto.FLOAT, [3]),
        ],
        [helper.make_tensor_value_info("out", TensorProto.FLOAT, [1, 3])],
        initializer=[bias],
    )
    return save_model(graph, path)


@pytest.fixture
def linear_model(tmp_path):
    return build_linear_model(tmp_path / "linear.onnx")


@pytest.fixture
def echo_model(tmp_path):
    return build_echo_model(tmp_path / "echo.onnx")


@pytest.fixture
def bias_model(tmp_path):
    return build_bias_model(tmp_path / "bias.onnx")


# ---------------------------------------------------------------------------
# Engine double
# ---------------------------------------------------------------------------

ECHO_INPUTS = [
    TensorDescriptor("x", (DYNAMIC_DIM, 3), ElementType.FLOAT, "tensor(float)",
                     ("batch", None)),
    TensorDescriptor("ids", (DYNAMIC_DIM,), ElementType.INT64, "tensor(int64)",
                     ("batch",)),
    TensorDescriptor("text", (DYNAMIC_DIM,), ElementType.STRING, "tensor(string)",
                     ("batch",)),
]


class EchoEngine(Engine):
    """Engine double: echoes every input back as '<name>_out'.

    Records each execute() call so tests can assert whether (and with what)
    the engine was invoked. `fail_with` makes execute() raise an
    InferenceError carrying that message instead.
    """

    def __init__(self, inputs=None, fail_with=None):
        self.inputs = list(inputs if inputs is not None else ECHO_INPUTS)
        self.fail_with = fail_with
        self.calls: list[dict[str, np.ndarray]] = []
        self.closed = False

    def input_descriptors(self):
        return list(self.inputs)

    def output_descriptors(self):
        return [TensorDescriptor(f"{d.name}_out", d.shape, d.element_type, d.type_name)
                for d in self.inputs]

    def active_providers(self):
        return ["cpu"]

    def execute(self, batch, output_names=None, cancel=None):
        if cancel is not None and cancel.cancelled:
            raise RunCancelled()
        self.calls.append({t.name: t.buffer.copy() for t in batch})
        if self.fail_with is not None:
            raise InferenceError(self.fail_with, names=batch.names)
        return NativeBatch([
            NativeTensor(f"{t.name}_out", t.element_type, t.shape, t.buffer.copy())
            for t in batch
            if output_names is None or f"{t.name}_out" in output_names
        ])

    def close(self):
        self.closed = True


@pytest.fixture
def echo_engine():
    return EchoEngine()


@pytest.fixture
def echo_inputs():
    """Valid inputs for ECHO_INPUTS with a batch of 2."""
    return {
        "x": np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]], dtype=np.float32),
        "ids": np.array([7, 8], dtype=np.int64),
        "text": np.array(["hello", "안녕하세요"], dtype=object),
    }
