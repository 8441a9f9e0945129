from __future__ import annotations

import pytest

onnx = pytest.importorskip("onnx")
from onnx import TensorProto, helper

from conftest import abc_model, chain_model, finish

from onnx_offload.backends import ParseResult, ReferenceBackend
from onnx_offload.errors import UnsupportedInitializerLocation, UnsupportedModelShape
from onnx_offload.feasibility import check_feasibility, ensure_feasible
from onnx_offload.graph import GraphView


class _EmptyParseBackend(ReferenceBackend):
    name = "empty-fake"

    def parse(self, model_bytes: bytes) -> ParseResult:
        return ParseResult(program=None, unsupported_nodes=["everything"])


def test_feasible_graph_reports_backend_flagged_nodes() -> None:
    report = check_feasibility(GraphView(abc_model()), ReferenceBackend(excluded_ops={"Sigmoid"}))
    assert report.ok
    assert report.reason is None
    assert report.backend_unsupported == ["B"]


def test_multi_output_graph_is_declined() -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [2])
    y1 = helper.make_tensor_value_info("y1", TensorProto.FLOAT, [2])
    y2 = helper.make_tensor_value_info("y2", TensorProto.FLOAT, [2])
    nodes = [helper.make_node("Relu", ["x"], ["y1"]), helper.make_node("Neg", ["x"], ["y2"])]
    graph = GraphView(finish(helper.make_graph(nodes, "two_out", [x], [y1, y2])))

    with pytest.raises(UnsupportedModelShape):
        ensure_feasible(graph, ReferenceBackend())

    report = check_feasibility(graph, ReferenceBackend())
    assert not report.ok
    assert isinstance(report.error, UnsupportedModelShape)
    assert "2 outputs" in report.reason


def test_dynamic_input_is_declined() -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [None, 4])
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [None, 4])
    graph = GraphView(finish(helper.make_graph([helper.make_node("Relu", ["x"], ["y"])], "dyn", [x], [y])))

    report = check_feasibility(graph, ReferenceBackend())
    assert not report.ok
    assert isinstance(report.error, UnsupportedModelShape)


def test_external_initializer_is_declined() -> None:
    model = abc_model()
    bias = model.graph.initializer[0]
    bias.data_location = TensorProto.EXTERNAL
    entry = bias.external_data.add()
    entry.key = "location"
    entry.value = "weights.bin"

    graph = GraphView(model, infer_shapes=False)
    assert graph.external_initializers() == ["bias"]

    with pytest.raises(UnsupportedInitializerLocation):
        ensure_feasible(graph, ReferenceBackend())
    assert not check_feasibility(graph, ReferenceBackend()).ok


def test_empty_parsed_program_is_declined() -> None:
    report = check_feasibility(GraphView(chain_model(["Relu"])), _EmptyParseBackend())
    assert not report.ok
    assert "empty program" in report.reason
