"""Read-only view over an ONNX model used by the partitioning pipeline."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import onnx
from onnx import TensorProto

from .onnx_utils import (
    build_producers_consumers,
    elemtype_from_vi,
    infer_shapes_safe,
    shape_from_vi,
    topo_sort,
    value_info_map,
)


@dataclass(frozen=True)
class NodeArg:
    """Named, typed tensor slot. `shape` is None when the rank is unknown."""

    name: str
    elem_type: Optional[int]
    shape: Optional[Tuple[Optional[int], ...]]

    @property
    def is_static(self) -> bool:
        return self.shape is not None and all(d is not None for d in self.shape)


class GraphView:
    """Topologically ordered, read-only view of `model.graph`.

    The model is deep-copied (and shape-inferred when `infer_shapes` is set),
    so the caller's proto is never touched.
    """

    def __init__(self, model: onnx.ModelProto, *, infer_shapes: bool = True) -> None:
        model = copy.deepcopy(model)
        if infer_shapes:
            model = infer_shapes_safe(model)
        self.model = model
        g = model.graph

        self.nodes, self.producer_of, self.consumers_of = build_producers_consumers(model)
        self.order: List[int] = topo_sort(self.nodes, self.producer_of)
        self.initializers: Dict[str, TensorProto] = {init.name: init for init in g.initializer}

        self.inputs_including_initializers: List[str] = [vi.name for vi in g.input]
        self.inputs: List[str] = [vi.name for vi in g.input if vi.name not in self.initializers]
        self.outputs: List[str] = [vi.name for vi in g.output]

        self._node_args: Dict[str, NodeArg] = {}
        for name, vi in value_info_map(model).items():
            shp = shape_from_vi(vi)
            self._node_args[name] = NodeArg(
                name=name,
                elem_type=elemtype_from_vi(vi),
                shape=tuple(shp) if shp is not None else None,
            )
        # Initializers carry authoritative dtype and dims.
        for name, init in self.initializers.items():
            if name not in self._node_args or self._node_args[name].elem_type is None:
                self._node_args[name] = NodeArg(
                    name=name, elem_type=int(init.data_type), shape=tuple(int(d) for d in init.dims)
                )

    @property
    def name(self) -> str:
        return self.model.graph.name

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, node_id: int) -> onnx.NodeProto:
        return self.nodes[node_id]

    def nodes_in_topological_order(self) -> Iterator[Tuple[int, onnx.NodeProto]]:
        for idx in self.order:
            yield idx, self.nodes[idx]

    def node_arg(self, name: str) -> Optional[NodeArg]:
        return self._node_args.get(name)

    def node_args(self, node: onnx.NodeProto) -> Iterator[Tuple[str, bool]]:
        """Yield (name, is_input) for every present input then output slot."""
        for name in node.input:
            if name:
                yield name, True
        for name in node.output:
            if name:
                yield name, False

    def is_initializer(self, name: str) -> bool:
        return name in self.initializers

    def external_initializers(self) -> List[str]:
        return [
            name
            for name, init in self.initializers.items()
            if init.data_location == TensorProto.EXTERNAL
        ]

    def consumers(self, name: str) -> Sequence[int]:
        return self.consumers_of.get(name, ())

    def graph_proto(self) -> onnx.GraphProto:
        return self.model.graph
