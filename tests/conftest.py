from __future__ import annotations

import threading
import time
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pytest

onnx = pytest.importorskip("onnx")
from onnx import TensorProto, helper

from onnx_offload.backends import ParamShape, ReferenceBackend

OPSET = 17
IR_VERSION = 8


def finish(graph: onnx.GraphProto) -> onnx.ModelProto:
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", OPSET)])
    model.ir_version = IR_VERSION
    return model


def chain_model(ops: Sequence[str], shape=(2, 3)) -> onnx.ModelProto:
    """x -> ops[0] -> t1 -> ops[1] -> ... -> y, all float, static shape."""
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, list(shape))
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, list(shape))
    nodes = []
    prev = "x"
    for i, op in enumerate(ops):
        out = "y" if i == len(ops) - 1 else f"t{i + 1}"
        nodes.append(helper.make_node(op, [prev], [out], name=f"{op.lower()}_{i}"))
        prev = out
    return finish(helper.make_graph(nodes, "chain", [x], [y]))


def abc_model() -> onnx.ModelProto:
    """A (Relu, supported) -> B (Sigmoid, excluded) -> C (Add with initializer, supported)."""
    x = helper.make_tensor_value_info("X", TensorProto.FLOAT, [2, 3])
    y = helper.make_tensor_value_info("Y", TensorProto.FLOAT, [2, 3])
    bias = helper.make_tensor("bias", TensorProto.FLOAT, [3], [0.5, -1.0, 2.0])
    nodes = [
        helper.make_node("Relu", ["X"], ["a"], name="A"),
        helper.make_node("Sigmoid", ["a"], ["b"], name="B"),
        helper.make_node("Add", ["b", "bias"], ["Y"], name="C"),
    ]
    return finish(helper.make_graph(nodes, "abc", [x], [y], initializer=[bias]))


def diamond_model() -> onnx.ModelProto:
    """Two supported branches around one excluded node; `a` feeds both sides."""
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [4])
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [4])
    w = helper.make_tensor("w", TensorProto.FLOAT, [4], [1.0, 2.0, 3.0, 4.0])
    nodes = [
        helper.make_node("Mul", ["x", "w"], ["a"], name="mul"),
        helper.make_node("Neg", ["a"], ["n"], name="neg"),
        helper.make_node("Sigmoid", ["n"], ["s"], name="sig"),
        helper.make_node("Add", ["s", "a"], ["y"], name="add"),
    ]
    return finish(helper.make_graph(nodes, "diamond", [x], [y], initializer=[w]))


def if_model() -> onnx.ModelProto:
    """Relu(x) -> a, then If(cond) whose branches read `a` from the outer scope."""
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [2])
    cond = helper.make_tensor_value_info("cond", TensorProto.BOOL, [])
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [2])

    then_out = helper.make_tensor_value_info("then_y", TensorProto.FLOAT, [2])
    else_out = helper.make_tensor_value_info("else_y", TensorProto.FLOAT, [2])
    then_branch = helper.make_graph([helper.make_node("Identity", ["a"], ["then_y"])], "then", [], [then_out])
    else_branch = helper.make_graph([helper.make_node("Neg", ["a"], ["else_y"])], "else", [], [else_out])

    nodes = [
        helper.make_node("Relu", ["x"], ["a"], name="relu"),
        helper.make_node("If", ["cond"], ["y"], name="branch", then_branch=then_branch, else_branch=else_branch),
    ]
    return finish(helper.make_graph(nodes, "if_outer", [x, cond], [y]))


# ---------------------------- Fake backends ----------------------------


class _ScratchProgram:
    """Wraps a reference program and declares an extra scratch parameter."""

    def __init__(self, inner, scratch_name: str, scratch_shape: ParamShape) -> None:
        self._inner = inner
        shapes: Dict[str, ParamShape] = {scratch_name: scratch_shape}
        shapes.update(inner.parameter_shapes())
        self._shapes = shapes
        self.scratch_name = scratch_name
        self.seen_scratch: List[np.ndarray] = []

    def parameter_shapes(self) -> Mapping[str, ParamShape]:
        return self._shapes

    def evaluate(self, params: Mapping[str, np.ndarray]) -> None:
        self.seen_scratch.append(params[self.scratch_name])
        self._inner.evaluate({k: v for k, v in params.items() if k != self.scratch_name})


class ScratchBackend(ReferenceBackend):
    name = "scratch-fake"

    def __init__(self, scratch_name: str = "scratch", **kwargs) -> None:
        super().__init__(**kwargs)
        self.scratch_name = scratch_name
        self.allocations: List[ParamShape] = []
        self.programs: List[_ScratchProgram] = []

    def compile(self, parsed, target):
        prog = _ScratchProgram(super().compile(parsed, target), self.scratch_name, ParamShape(TensorProto.FLOAT, (16,)))
        self.programs.append(prog)
        return prog

    def allocate(self, shape: ParamShape) -> np.ndarray:
        self.allocations.append(shape)
        return super().allocate(shape)


class FailingBackend(ReferenceBackend):
    name = "failing-fake"

    def compile(self, parsed, target):
        raise RuntimeError("device rejected the program")


class _RecordingProgram:
    def __init__(self, inner, recorder: "ConcurrencyRecorder") -> None:
        self._inner = inner
        self._rec = recorder

    def parameter_shapes(self):
        return self._inner.parameter_shapes()

    def evaluate(self, params) -> None:
        self._rec.enter()
        try:
            time.sleep(0.002)
            self._inner.evaluate(params)
        finally:
            self._rec.leave()


class ConcurrencyRecorder:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.calls = 0

    def enter(self) -> None:
        with self._guard:
            self.active += 1
            self.calls += 1
            self.max_active = max(self.max_active, self.active)

    def leave(self) -> None:
        with self._guard:
            self.active -= 1


class RecordingBackend(ReferenceBackend):
    name = "recording-fake"

    def __init__(self, recorder: Optional[ConcurrencyRecorder] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.recorder = recorder or ConcurrencyRecorder()

    def compile(self, parsed, target):
        return _RecordingProgram(super().compile(parsed, target), self.recorder)


class _GatedProgram:
    def __init__(self, inner, backend: "GatedBackend") -> None:
        self._inner = inner
        self._backend = backend

    def parameter_shapes(self):
        return self._inner.parameter_shapes()

    def evaluate(self, params) -> None:
        self._backend.entered.set()
        self._backend.release.wait(5.0)
        self._inner.evaluate(params)


class GatedBackend(ReferenceBackend):
    """Evaluations block until `release` is set; `entered` marks the first one."""

    name = "gated-fake"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def compile(self, parsed, target):
        return _GatedProgram(super().compile(parsed, target), self)


@pytest.fixture
def abc():
    return abc_model()


@pytest.fixture
def diamond():
    return diamond_model()
