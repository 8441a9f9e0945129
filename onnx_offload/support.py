"""Support oracle: which nodes can the backend execute?"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AbstractSet, FrozenSet, List, Optional

import onnx
from onnx import TensorProto

from .graph import GraphView, NodeArg
from .onnx_utils import node_inputs

LOGGER = logging.getLogger(__name__)


ALLOWED_ELEM_TYPES: FrozenSet[int] = frozenset(
    {
        TensorProto.FLOAT16,
        TensorProto.FLOAT,
        TensorProto.DOUBLE,
        TensorProto.INT8,
        TensorProto.INT16,
        TensorProto.INT32,
        TensorProto.INT64,
        TensorProto.UINT8,
        TensorProto.UINT16,
        TensorProto.UINT32,
        TensorProto.UINT64,
    }
)


def is_type_supported(node_arg: Optional[NodeArg]) -> bool:
    if node_arg is None or node_arg.elem_type is None:
        return False
    return int(node_arg.elem_type) in ALLOWED_ELEM_TYPES


@dataclass
class SupportScan:
    """Result of classifying every node of a graph.

    `required_constants` lists initializer names consumed by supported nodes
    in first-seen order; the boundary resolver treats them as compile-time
    constants.
    """

    unsupported: List[int] = field(default_factory=list)
    required_constants: List[str] = field(default_factory=list)

    @property
    def all_supported(self) -> bool:
        return not self.unsupported


class SupportOracle:
    def __init__(self, supported_ops: AbstractSet[str]) -> None:
        self.supported_ops = frozenset(supported_ops)

    def is_supported(self, node: onnx.NodeProto, graph: GraphView) -> bool:
        for name, _is_input in graph.node_args(node):
            if not is_type_supported(graph.node_arg(name)):
                return False
        return node.op_type in self.supported_ops

    def scan(self, graph: GraphView) -> SupportScan:
        result = SupportScan()
        seen = set()
        for idx, node in graph.nodes_in_topological_order():
            if not self.is_supported(node, graph):
                LOGGER.debug("Node %d (%s '%s') is not supported", idx, node.op_type, node.name)
                result.unsupported.append(idx)
                continue
            for name in node_inputs(node):
                if name and name not in seen and graph.is_initializer(name):
                    seen.add(name)
                    result.required_constants.append(name)
        return result
