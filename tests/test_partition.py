from __future__ import annotations

import pytest

onnx = pytest.importorskip("onnx")
from onnx import TensorProto, helper

from conftest import abc_model, chain_model, diamond_model, finish

from onnx_offload.backends import ReferenceBackend
from onnx_offload.graph import GraphView
from onnx_offload.partition import Partitioner, partition_clusters
from onnx_offload.provider import OffloadProvider
from onnx_offload.support import SupportOracle, SupportScan


def _provider(excluded=()) -> OffloadProvider:
    return OffloadProvider(backend=ReferenceBackend(excluded_ops=set(excluded)))


def test_abc_scenario_yields_two_clusters() -> None:
    caps = _provider(["Sigmoid"]).get_capability(abc_model())

    assert [c.node_ids for c in caps] == [(0,), (2,)]
    assert [c.name for c in caps] == ["OffloadCluster_1", "OffloadCluster_2"]
    assert caps[0].inputs == ("X",)
    assert caps[0].outputs == ("a",)
    assert caps[1].runtime_inputs == ("b",)
    assert caps[1].constant_inputs == ("bias",)
    assert caps[1].outputs == ("Y",)


def test_all_supported_yields_single_whole_graph_cluster() -> None:
    caps = _provider().get_capability(abc_model())

    assert len(caps) == 1
    cap = caps[0]
    assert cap.node_ids == (0, 1, 2)
    assert cap.inputs == ("X", "bias")
    assert cap.num_runtime_inputs == 1
    assert cap.outputs == ("Y",)


def test_no_declared_inputs_yields_nothing() -> None:
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [2])
    c = helper.make_node("Constant", [], ["c"], value=helper.make_tensor("v", TensorProto.FLOAT, [2], [1.0, 2.0]))
    neg = helper.make_node("Neg", ["c"], ["y"])
    model = finish(helper.make_graph([c, neg], "folded", [], [y]))

    assert _provider().get_capability(model) == []


@pytest.mark.parametrize(
    "order, unsupported, expected",
    [
        ([0, 1, 2, 3, 4], [], [[0, 1, 2, 3, 4]]),
        ([0, 1, 2, 3, 4], [0], [[1, 2, 3, 4]]),
        ([0, 1, 2, 3, 4], [4], [[0, 1, 2, 3]]),
        ([0, 1, 2, 3, 4], [1, 2], [[0], [3, 4]]),
        ([0, 1, 2, 3, 4], [0, 2, 4], [[1], [3]]),
        ([2, 0, 1], [0], [[2], [1]]),
        ([0, 1], [0, 1], []),
    ],
)
def test_partition_clusters_exactly_partitions(order, unsupported, expected) -> None:
    clusters = partition_clusters(order, unsupported)
    assert clusters == expected
    assert len(clusters) <= len(unsupported) + 1

    flat = [nid for c in clusters for nid in c] + list(unsupported)
    assert sorted(flat) == sorted(order)
    assert len(flat) == len(set(flat))


def test_partition_clusters_rejects_unknown_or_unordered_ids() -> None:
    with pytest.raises(ValueError):
        partition_clusters([0, 1, 2], [5])
    with pytest.raises(ValueError):
        partition_clusters([0, 1, 2], [2, 1])


def test_partitioning_is_idempotent() -> None:
    graph = GraphView(diamond_model())
    scan = SupportOracle(ReferenceBackend(excluded_ops={"Sigmoid"}).supported_ops()).scan(graph)

    first = Partitioner().get_capability(graph, scan)
    second = Partitioner().get_capability(graph, scan)
    assert first == second


def test_names_come_from_instance_counter() -> None:
    graph = GraphView(chain_model(["Relu", "Sigmoid", "Neg", "Sigmoid", "Abs"]))
    scan = SupportOracle(ReferenceBackend(excluded_ops={"Sigmoid"}).supported_ops()).scan(graph)

    p = Partitioner("Acc")
    assert [c.name for c in p.get_capability(graph, scan)] == ["Acc_1", "Acc_2", "Acc_3"]
    assert [c.name for c in p.get_capability(graph, scan)] == ["Acc_4", "Acc_5", "Acc_6"]
    p.reset()
    assert p.get_capability(graph, scan)[0].name == "Acc_1"

    # Independent instances do not share the counter.
    assert Partitioner("Acc").get_capability(graph, scan)[0].name == "Acc_1"


def test_infeasible_graph_is_declined_without_error(caplog) -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, ["N", 3])
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, ["N", 3])
    model = finish(helper.make_graph([helper.make_node("Relu", ["x"], ["y"])], "dyn", [x], [y]))

    with caplog.at_level("WARNING", logger="onnx_offload"):
        assert _provider().get_capability(model) == []
    assert any("dynamic shape" in r.getMessage() for r in caplog.records)


def test_capability_to_dict_is_json_friendly() -> None:
    cap = _provider(["Sigmoid"]).get_capability(abc_model())[1]
    assert cap.to_dict() == {
        "name": "OffloadCluster_2",
        "node_ids": [2],
        "inputs": ["b", "bias"],
        "outputs": ["Y"],
        "num_runtime_inputs": 1,
    }


def test_graph_without_nodes_has_no_cluster() -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [2])
    graph = GraphView(finish(helper.make_graph([], "empty", [x], [x])))

    assert Partitioner().get_capability(graph, SupportScan()) == []


def test_forwarded_input_is_not_a_cluster_output() -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [2])
    z = helper.make_tensor_value_info("z", TensorProto.FLOAT, [2])
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [2])
    node = helper.make_node("Relu", ["x"], ["y"], name="relu")
    graph = GraphView(finish(helper.make_graph([node], "forward", [x, z], [y, z])))

    (cap,) = Partitioner().get_capability(graph, SupportScan())
    assert cap.inputs == ("x", "z")
    assert cap.outputs == ("y",)
