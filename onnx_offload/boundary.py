"""Cluster boundary inference: which tensors enter and leave a cluster."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from .graph import GraphView
from .onnx_utils import node_inputs


@dataclass(frozen=True)
class ClusterBoundary:
    """Ordered external inputs and outputs of one cluster.

    `inputs` holds runtime inputs first, then constants (initializers), each
    group in first-seen order. Downstream binding relies on these positions.
    """

    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    num_runtime_inputs: int

    @property
    def runtime_inputs(self) -> Tuple[str, ...]:
        return self.inputs[: self.num_runtime_inputs]

    @property
    def constant_inputs(self) -> Tuple[str, ...]:
        return self.inputs[self.num_runtime_inputs :]


def _first_seen(names: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for n in names:
        if n and n not in seen:
            seen.add(n)
            out.append(n)
    return out


def resolve_boundary(
    graph: GraphView,
    node_ids: Sequence[int],
    required_constants: Iterable[str] = (),
) -> ClusterBoundary:
    members = set(node_ids)
    nodes = [graph.node(i) for i in node_ids]

    consumed = _first_seen(name for node in nodes for name in node_inputs(node))
    produced = _first_seen(name for node in nodes for name in node.output)
    produced_set = set(produced)

    graph_outputs = set(graph.outputs)
    declared_inputs = set(graph.inputs_including_initializers)
    required = set(required_constants)

    def is_constant(name: str) -> bool:
        # Initializers that double as graph inputs can be overridden at run
        # time, unless the oracle pinned them as constants.
        return (graph.is_initializer(name) and name not in declared_inputs) or name in required

    runtime_inputs = [n for n in consumed if n not in produced_set and not is_constant(n)]
    constant_inputs = [n for n in consumed if n not in produced_set and is_constant(n)]

    outputs = [
        n
        for n in produced
        if n in graph_outputs or any(c not in members for c in graph.consumers(n))
    ]

    return ClusterBoundary(
        inputs=tuple(runtime_inputs + constant_inputs),
        outputs=tuple(outputs),
        num_runtime_inputs=len(runtime_inputs),
    )
