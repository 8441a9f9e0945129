"""ONNX graph parsing helpers.

Includes:
- dtype/shape helpers
- value_info map extraction
- producer/consumer maps (including subgraph reads)
- topological sort
- best-effort shape inference
- random feeds for smoke runs
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

import numpy as np
import onnx
from onnx import AttributeProto, TensorProto, helper, shape_inference

LOGGER = logging.getLogger(__name__)


def np_dtype(elem_type: int) -> np.dtype:
    """numpy dtype for an ONNX element type."""
    return np.dtype(helper.tensor_dtype_to_np_dtype(int(elem_type)))


def elem_type_name(elem_type: Optional[int]) -> str:
    if elem_type is None:
        return "<unknown>"
    try:
        return TensorProto.DataType.Name(int(elem_type))
    except ValueError:
        return f"<elem_type {elem_type}>"


# ---------------------------- ValueInfo helpers ----------------------------

def shape_from_vi(vi) -> Optional[List[Optional[int]]]:
    if vi is None or not vi.type.HasField("tensor_type"):
        return None
    tt = vi.type.tensor_type
    if not tt.HasField("shape"):
        return None
    shp: List[Optional[int]] = []
    for d in tt.shape.dim:
        shp.append(int(d.dim_value) if d.HasField("dim_value") else None)
    return shp


def elemtype_from_vi(vi) -> Optional[int]:
    if vi is None or not vi.type.HasField("tensor_type"):
        return None
    et = int(vi.type.tensor_type.elem_type)
    return et if et != TensorProto.UNDEFINED else None


def value_info_map(model: onnx.ModelProto) -> Dict[str, onnx.ValueInfoProto]:
    """Map tensor name -> ValueInfo.

    Constant node outputs often never get a ValueInfo from shape inference.
    Their dtype and dims are read from the node attributes instead, so the
    type check in the support oracle does not reject them for lack of a type.
    """

    vis = list(model.graph.input) + list(model.graph.value_info) + list(model.graph.output)
    m: Dict[str, onnx.ValueInfoProto] = {vi.name: vi for vi in vis}

    for n in model.graph.node:
        if n.op_type != "Constant" or not n.output:
            continue
        out = n.output[0]
        existing = m.get(out)
        if existing is not None and elemtype_from_vi(existing) is not None:
            continue

        inferred: Optional[Tuple[int, List[int]]] = None
        for a in n.attribute:
            if a.name == "value" and a.type == AttributeProto.TENSOR:
                inferred = (a.t.data_type, list(a.t.dims))
            elif a.name == "value_int" and a.type == AttributeProto.INT:
                inferred = (TensorProto.INT64, [])
            elif a.name == "value_float" and a.type == AttributeProto.FLOAT:
                inferred = (TensorProto.FLOAT, [])
            elif a.name == "value_ints" and a.type == AttributeProto.INTS:
                inferred = (TensorProto.INT64, [len(a.ints)])
            elif a.name == "value_floats" and a.type == AttributeProto.FLOATS:
                inferred = (TensorProto.FLOAT, [len(a.floats)])
            elif a.name == "value_string" and a.type == AttributeProto.STRING:
                inferred = (TensorProto.STRING, [])
            elif a.name == "value_strings" and a.type == AttributeProto.STRINGS:
                inferred = (TensorProto.STRING, [len(a.strings)])
            if inferred is not None:
                break

        if inferred is not None:
            dtype, shape = inferred
            m[out] = helper.make_tensor_value_info(out, dtype, shape)

    return m


# ---------------------------- Graph utilities ----------------------------

def _outer_names(graph: onnx.GraphProto) -> List[str]:
    local = {vi.name for vi in graph.input} | {init.name for init in graph.initializer}
    names: List[str] = []
    for n in graph.node:
        for name in list(n.input) + implicit_inputs(n):
            if name and name not in local and name not in names:
                names.append(name)
        local.update(o for o in n.output if o)
    return names


def implicit_inputs(node: onnx.NodeProto) -> List[str]:
    """Outer-scope names read by the node's subgraph attributes (If/Loop/Scan bodies)."""
    out: List[str] = []
    for a in node.attribute:
        if a.type == AttributeProto.GRAPH:
            bodies = [a.g]
        elif a.type == AttributeProto.GRAPHS:
            bodies = list(a.graphs)
        else:
            continue
        for body in bodies:
            for name in _outer_names(body):
                if name not in out:
                    out.append(name)
    return out


def node_inputs(node: onnx.NodeProto) -> List[str]:
    """Explicit inputs followed by implicit (subgraph) inputs."""
    names = list(node.input)
    names.extend(n for n in implicit_inputs(node) if n not in names)
    return names


def build_producers_consumers(model: onnx.ModelProto):
    nodes = list(model.graph.node)
    producer_of: Dict[str, int] = {}
    consumers_of: Dict[str, List[int]] = defaultdict(list)

    for idx, node in enumerate(nodes):
        for out in node.output:
            if out:
                producer_of[out] = idx

    for idx, node in enumerate(nodes):
        for inp in node_inputs(node):
            if inp in producer_of and idx not in consumers_of[inp]:
                consumers_of[inp].append(idx)

    return nodes, producer_of, consumers_of


def topo_sort(nodes: List[onnx.NodeProto], producer_of: Dict[str, int]) -> List[int]:
    """Kahn topological sort over ONNX node indices.

    Ready nodes are taken lowest index first, so a node list that is already
    topologically ordered comes back unchanged.
    """
    preds: List[set] = [set() for _ in nodes]
    succs: List[set] = [set() for _ in nodes]

    for j, node in enumerate(nodes):
        for inp in node_inputs(node):
            if inp in producer_of:
                p = producer_of[inp]
                if p == j:
                    continue
                preds[j].add(p)
                succs[p].add(j)

    indeg = [len(p) for p in preds]
    ready = [i for i, d in enumerate(indeg) if d == 0]
    heapq.heapify(ready)
    order: List[int] = []

    while ready:
        u = heapq.heappop(ready)
        order.append(u)
        for v in succs[u]:
            indeg[v] -= 1
            if indeg[v] == 0:
                heapq.heappush(ready, v)

    # Cycles: keep the leftovers in file order rather than dropping them.
    if len(order) != len(nodes):
        seen = set(order)
        order.extend(i for i in range(len(nodes)) if i not in seen)

    return order


def infer_shapes_safe(model: onnx.ModelProto) -> onnx.ModelProto:
    """Run ONNX shape inference, returning the input model unchanged on failure."""
    try:
        return shape_inference.infer_shapes(model, strict_mode=False)
    except Exception as e:
        LOGGER.debug("onnx.shape_inference failed (continuing): %s", e)
        return model


def make_random_inputs(
    model: onnx.ModelProto,
    *,
    seed: int = 0,
    default_dim: int = 1,
) -> Dict[str, np.ndarray]:
    """Generate random input tensors for the declared (non-initializer) inputs.

    Unknown dims become `default_dim`.
    """
    rng = np.random.default_rng(int(seed))

    g = model.graph
    init_names = {i.name for i in g.initializer}

    feeds: Dict[str, np.ndarray] = {}
    for vi in g.input:
        if vi.name in init_names:
            continue
        et = elemtype_from_vi(vi)
        if et is None:
            continue

        dtype = np_dtype(et)
        dims = [int(d) if (d is not None and int(d) > 0) else int(default_dim) for d in (shape_from_vi(vi) or [])]

        if np.issubdtype(dtype, np.floating):
            arr = rng.standard_normal(dims).astype(dtype)
        elif dtype == np.bool_:
            arr = (rng.random(dims) > 0.5).astype(dtype)
        elif dtype == np.int8:
            arr = rng.integers(-5, 6, size=dims, dtype=dtype)
        else:
            arr = rng.integers(0, 11, size=dims, dtype=dtype)
        feeds[vi.name] = np.asarray(arr)
    return feeds
