"""Whole-graph feasibility gate.

Hard backend limits are cheaper to check once for the full graph than per
cluster:

- initializers must be stored inline (no external data files),
- the graph must declare a single output,
- every declared input must have fully static dims,
- the backend must produce a non-empty program when parsing the whole graph.

A failed check is not an error for the caller: the provider simply offloads
nothing. `ensure_feasible` raises, `check_feasibility` reports.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .backends.base import Backend
from .errors import OffloadError, UnsupportedInitializerLocation, UnsupportedModelShape
from .graph import GraphView
from .log_utils import preview_names
from .subgraph import clone_model

LOGGER = logging.getLogger(__name__)


@dataclass
class FeasibilityReport:
    ok: bool
    reason: Optional[str] = None
    error: Optional[OffloadError] = None
    # Node names the backend parser flagged; diagnostic only.
    backend_unsupported: List[str] = field(default_factory=list)


def _check_static(graph: GraphView) -> None:
    if graph.external_initializers():
        raise UnsupportedInitializerLocation(
            "Initializers with external data location are not supported: "
            + preview_names(graph.external_initializers())
        )

    if len(graph.outputs) > 1:
        raise UnsupportedModelShape(
            f"Backend supports single-output programs only, graph has {len(graph.outputs)} outputs"
        )

    for name in graph.inputs:
        arg = graph.node_arg(name)
        if arg is None or not arg.is_static:
            shape = arg.shape if arg is not None else None
            raise UnsupportedModelShape(f"Graph input '{name}' has a dynamic shape {shape}")


def ensure_feasible(graph: GraphView, backend: Backend) -> List[str]:
    """Raise if the whole graph cannot be offloaded.

    Returns the node names the backend parser reported as unsupported.
    """
    _check_static(graph)

    model_bytes = clone_model(graph).SerializeToString()
    parsed = backend.parse(model_bytes)
    if parsed.empty:
        raise UnsupportedModelShape(f"Backend '{backend.name}' produced an empty program for '{graph.name}'")

    if parsed.unsupported_nodes:
        LOGGER.info(
            "Backend parser flagged %d node(s) as unsupported: %s",
            len(parsed.unsupported_nodes),
            preview_names(parsed.unsupported_nodes),
        )
    return list(parsed.unsupported_nodes)


def check_feasibility(graph: GraphView, backend: Backend) -> FeasibilityReport:
    try:
        flagged = ensure_feasible(graph, backend)
    except (UnsupportedModelShape, UnsupportedInitializerLocation) as e:
        LOGGER.warning("Whole-graph offload declined, falling back to host execution: %s", e)
        return FeasibilityReport(ok=False, reason=str(e), error=e)
    return FeasibilityReport(ok=True, backend_unsupported=flagged)
