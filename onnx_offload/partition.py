"""Partitioning into maximal offloadable clusters.

Nodes are visited in topological order. Every unsupported node closes the
current run of supported nodes; each non-empty run becomes a cluster. When
nothing is unsupported the whole graph is offered as a single cluster.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Sequence, Tuple

from .boundary import resolve_boundary
from .graph import GraphView
from .support import SupportScan

LOGGER = logging.getLogger(__name__)

# Domain of the fused nodes that replace clusters in the host graph.
OFFLOAD_DOMAIN = "ai.onnx_offload"
OFFLOAD_DOMAIN_VERSION = 1


@dataclass(frozen=True)
class ClusterCapability:
    """Capability record emitted for one accepted cluster."""

    name: str
    node_ids: Tuple[int, ...]
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    num_runtime_inputs: int

    @property
    def runtime_inputs(self) -> Tuple[str, ...]:
        return self.inputs[: self.num_runtime_inputs]

    @property
    def constant_inputs(self) -> Tuple[str, ...]:
        return self.inputs[self.num_runtime_inputs :]

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for k in ("node_ids", "inputs", "outputs"):
            d[k] = list(d[k])
        return d


def partition_clusters(order: Sequence[int], unsupported: Sequence[int]) -> List[List[int]]:
    """Split `order` into maximal runs that contain no unsupported node.

    `unsupported` must list node ids in the same topological order.
    """
    position = {nid: i for i, nid in enumerate(order)}

    clusters: List[List[int]] = []
    cursor = 0
    for nid in unsupported:
        if nid not in position:
            raise ValueError(f"Unsupported node id {nid} is not part of the topological order")
        pos = position[nid]
        if pos < cursor:
            raise ValueError(f"Unsupported node ids are not in topological order (at node id {nid})")
        if pos > cursor:
            clusters.append(list(order[cursor:pos]))
        cursor = pos + 1

    if cursor < len(order):
        clusters.append(list(order[cursor:]))
    return clusters


class Partitioner:
    """Builds capability records and names them `<prefix>_<n>`.

    The counter is owned by the instance so naming is deterministic; names
    are unique per partitioner only.
    """

    def __init__(self, prefix: str = "OffloadCluster") -> None:
        self.prefix = prefix
        self._counter = 0

    def reset(self) -> None:
        self._counter = 0

    def _next_name(self) -> str:
        self._counter += 1
        return f"{self.prefix}_{self._counter}"

    def get_capability(self, graph: GraphView, scan: SupportScan) -> List[ClusterCapability]:
        if scan.all_supported:
            # A graph without runtime inputs has been (or will be) constant-folded.
            if not graph.inputs:
                LOGGER.info("All nodes supported but graph has no inputs; nothing to offload")
                return []
            if not graph.order:
                LOGGER.info("Graph has no nodes; nothing to offload")
                return []
            inputs = list(graph.inputs) + [c for c in scan.required_constants if c not in graph.inputs]
            # Inputs forwarded straight to a graph output are not produced by the cluster.
            outputs = [o for o in graph.outputs if o not in inputs]
            return [
                ClusterCapability(
                    name=self._next_name(),
                    node_ids=tuple(graph.order),
                    inputs=tuple(inputs),
                    outputs=tuple(outputs),
                    num_runtime_inputs=len(graph.inputs),
                )
            ]

        result: List[ClusterCapability] = []
        for node_ids in partition_clusters(graph.order, scan.unsupported):
            boundary = resolve_boundary(graph, node_ids, scan.required_constants)
            if not boundary.inputs:
                LOGGER.debug("Dropping cluster of %d node(s) without inputs", len(node_ids))
                continue
            result.append(
                ClusterCapability(
                    name=self._next_name(),
                    node_ids=tuple(node_ids),
                    inputs=boundary.inputs,
                    outputs=boundary.outputs,
                    num_runtime_inputs=boundary.num_runtime_inputs,
                )
            )

        LOGGER.info(
            "Partitioned %d node(s) into %d cluster(s), %d node(s) stay on the host",
            len(graph),
            len(result),
            len(scan.unsupported),
        )
        return result
