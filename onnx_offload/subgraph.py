"""Standalone sub-models for clusters, and fusion of clusters into the host graph.

- `clone_model`: the whole graph as a standalone model (feasibility check)
- `build_cluster_model`: one cluster as a standalone model
- `fuse_clusters`: replace each cluster by a single node whose body is a
  model-local function
- `model_from_fused_node`: rebuild a standalone model from such a node
"""

from __future__ import annotations

import copy
import logging
import os
from typing import Dict, List, Optional, Sequence

import onnx
from onnx import TensorProto, helper

from .errors import MissingFunctionBody
from .graph import GraphView
from .onnx_utils import elemtype_from_vi, shape_from_vi, value_info_map
from .partition import OFFLOAD_DOMAIN, OFFLOAD_DOMAIN_VERSION, ClusterCapability

LOGGER = logging.getLogger(__name__)

PRODUCER_NAME = "onnx-offload"


def make_fallback_value_info(name: str) -> onnx.ValueInfoProto:
    """Minimal ValueInfoProto: float tensor, unknown shape."""
    return helper.make_tensor_value_info(name, TensorProto.FLOAT, None)


def _value_info(graph: GraphView, name: str) -> onnx.ValueInfoProto:
    arg = graph.node_arg(name)
    if arg is None or arg.elem_type is None:
        return make_fallback_value_info(name)
    shape = list(arg.shape) if arg.shape is not None else None
    return helper.make_tensor_value_info(name, arg.elem_type, shape)


def _finish_model(graph_proto: onnx.GraphProto, source: onnx.ModelProto, opset_imports=None) -> onnx.ModelProto:
    model = helper.make_model(
        graph_proto,
        producer_name=PRODUCER_NAME,
        opset_imports=list(opset_imports if opset_imports is not None else source.opset_import),
    )
    model.ir_version = source.ir_version
    return model


def _check(model: onnx.ModelProto, name: str) -> None:
    try:
        onnx.checker.check_model(model)
    except Exception as e:
        raise RuntimeError(f"ONNX checker failed for submodel '{name}': {e}") from e


def clone_model(graph: GraphView) -> onnx.ModelProto:
    """Standalone copy of the whole graph (shape-inferred)."""
    return copy.deepcopy(graph.model)


def build_cluster_model(graph: GraphView, capability: ClusterCapability) -> onnx.ModelProto:
    """Materialize one cluster as a standalone ONNX model.

    Runtime inputs become graph inputs, constant inputs become initializers,
    cluster outputs become graph outputs.
    """
    nodes = [copy.deepcopy(graph.node(i)) for i in capability.node_ids]

    initializers = [
        copy.deepcopy(graph.initializers[name])
        for name in capability.constant_inputs
        if name in graph.initializers
    ]
    new_graph = helper.make_graph(
        nodes=nodes,
        name=capability.name,
        inputs=[_value_info(graph, n) for n in capability.runtime_inputs],
        outputs=[_value_info(graph, n) for n in capability.outputs],
        initializer=initializers,
    )

    boundary = set(capability.inputs) | set(capability.outputs)
    for n in nodes:
        for name in list(n.input) + list(n.output):
            if name and name not in boundary and graph.node_arg(name) is not None:
                new_graph.value_info.append(_value_info(graph, name))
                boundary.add(name)

    model = _finish_model(new_graph, graph.model)
    for fn in graph.model.functions:
        model.functions.append(copy.deepcopy(fn))
    _check(model, capability.name)
    return model


def fuse_clusters(graph: GraphView, capabilities: Sequence[ClusterCapability]) -> onnx.ModelProto:
    """Return a copy of the model where every cluster is one fused node.

    The fused node sits at the cluster's first topological position, uses
    the cluster name as op type in the offload domain, and carries its
    member nodes as a model-local function.
    """
    owner: Dict[int, ClusterCapability] = {}
    for cap in capabilities:
        for nid in cap.node_ids:
            if nid in owner:
                raise ValueError(f"Node id {nid} belongs to both '{owner[nid].name}' and '{cap.name}'")
            owner[nid] = cap

    model = copy.deepcopy(graph.model)
    new_nodes: List[onnx.NodeProto] = []
    emitted = set()
    for idx, node in graph.nodes_in_topological_order():
        cap = owner.get(idx)
        if cap is None:
            new_nodes.append(copy.deepcopy(node))
            continue
        if cap.name in emitted:
            continue
        emitted.add(cap.name)
        new_nodes.append(
            helper.make_node(
                cap.name,
                inputs=list(cap.inputs),
                outputs=list(cap.outputs),
                name=cap.name,
                domain=OFFLOAD_DOMAIN,
            )
        )
        model.functions.append(
            helper.make_function(
                OFFLOAD_DOMAIN,
                cap.name,
                list(cap.inputs),
                list(cap.outputs),
                [copy.deepcopy(graph.node(i)) for i in cap.node_ids],
                list(graph.model.opset_import),
            )
        )

    del model.graph.node[:]
    model.graph.node.extend(new_nodes)
    if capabilities and not any(op.domain == OFFLOAD_DOMAIN for op in model.opset_import):
        model.opset_import.append(helper.make_opsetid(OFFLOAD_DOMAIN, OFFLOAD_DOMAIN_VERSION))
    return model


def fused_nodes(model: onnx.ModelProto) -> List[onnx.NodeProto]:
    return [n for n in model.graph.node if n.domain == OFFLOAD_DOMAIN]


def find_function(model: onnx.ModelProto, node: onnx.NodeProto) -> Optional[onnx.FunctionProto]:
    for fn in model.functions:
        if fn.name == node.op_type and fn.domain == node.domain:
            return fn
    return None


def _rename_in_graph(graph: onnx.GraphProto, mapping: Dict[str, str]) -> None:
    for n in graph.node:
        for i, name in enumerate(n.input):
            n.input[i] = mapping.get(name, name)
        for i, name in enumerate(n.output):
            n.output[i] = mapping.get(name, name)
        for a in n.attribute:
            bodies = [a.g] if a.type == onnx.AttributeProto.GRAPH else list(a.graphs)
            for body in bodies:
                # Names a body defines itself shadow the outer ones.
                local = {vi.name for vi in body.input} | {i.name for i in body.initializer}
                local.update(o for bn in body.node for o in bn.output)
                inner = {k: v for k, v in mapping.items() if k not in local}
                if inner:
                    _rename_in_graph(body, inner)

    for coll in (graph.input, graph.output, graph.value_info):
        for vi in coll:
            vi.name = mapping.get(vi.name, vi.name)
    for init in graph.initializer:
        init.name = mapping.get(init.name, init.name)


def rename_values_in_model(model: onnx.ModelProto, mapping: Dict[str, str]) -> None:
    """Apply `old -> new` renames in one pass, so swaps (a->b, b->a) do not collide."""
    mapping = {old: new for old, new in mapping.items() if old != new}
    if mapping:
        _rename_in_graph(model.graph, mapping)


def model_from_fused_node(node: onnx.NodeProto, model: onnx.ModelProto) -> onnx.ModelProto:
    """Rebuild the standalone sub-model of a fused node from its function body.

    Function inputs bound to host initializers become initializers of the
    sub-model; the rest become graph inputs.
    """
    fn = find_function(model, node)
    if fn is None:
        raise MissingFunctionBody(f"Could not extract function body for node: {node.name or node.op_type}")

    init_map = {i.name: i for i in model.graph.initializer}
    vimap = value_info_map(model)

    def vi_for(formal: str, actual: str) -> onnx.ValueInfoProto:
        src = vimap.get(actual)
        et = elemtype_from_vi(src)
        if et is None and actual in init_map:
            return helper.make_tensor_value_info(formal, init_map[actual].data_type, list(init_map[actual].dims))
        if et is None:
            return make_fallback_value_info(formal)
        return helper.make_tensor_value_info(formal, et, shape_from_vi(src))

    inputs: List[onnx.ValueInfoProto] = []
    initializers: List[onnx.TensorProto] = []
    for formal, actual in zip(fn.input, node.input):
        if actual in init_map:
            t = copy.deepcopy(init_map[actual])
            t.name = formal
            initializers.append(t)
        else:
            inputs.append(vi_for(formal, actual))
    outputs = [vi_for(formal, actual) for formal, actual in zip(fn.output, node.output)]

    body = helper.make_graph(
        nodes=[copy.deepcopy(n) for n in fn.node],
        name=fn.name,
        inputs=inputs,
        outputs=outputs,
        initializer=initializers,
    )
    sub = _finish_model(body, model, opset_imports=fn.opset_import)

    # Use the fused node's tensor names so parameters line up with its I/O.
    renames = dict(zip(fn.input, node.input))
    renames.update(zip(fn.output, node.output))
    rename_values_in_model(sub, renames)

    _check(sub, node.name or node.op_type)
    return sub


def save_model(model: onnx.ModelProto, path: str) -> None:
    """Save a sub-model to disk (debugging aid)."""
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    onnx.save(model, path)
    LOGGER.debug("Saved sub-model to %s", path)
