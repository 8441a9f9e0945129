"""Offload provider: capability query and compilation for one backend.

The provider owns
- the partitioner (and with it the cluster-name counter),
- the table of compiled programs, written once at compile time,
- the lock that serializes every program evaluation.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Dict, List, Optional, Union

import onnx

from .backends import Backend, create_backend
from .compiler import CompiledCluster, compile_fused_node
from .config import ProviderConfig
from .dispatch import ClusterKernel
from .feasibility import check_feasibility
from .graph import GraphView
from .partition import ClusterCapability, Partitioner
from .subgraph import fused_nodes
from .support import SupportOracle

LOGGER = logging.getLogger(__name__)


class OffloadProvider:
    def __init__(self, backend: Optional[Backend] = None, config: Optional[ProviderConfig] = None) -> None:
        self.config = config or ProviderConfig()
        if backend is None:
            backend = create_backend(
                self.config.backend,
                supported_ops=set(self.config.supported_ops) if self.config.supported_ops is not None else None,
                excluded_ops=set(self.config.excluded_ops),
            )
        self.backend = backend
        self.target = self.config.target()
        self.oracle = SupportOracle(self.backend.supported_ops())
        self.partitioner = Partitioner(self.config.name_prefix)

        self._lock = threading.Lock()
        self._compiled: Dict[str, CompiledCluster] = {}

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def get_capability(self, model: Union[onnx.ModelProto, GraphView]) -> List[ClusterCapability]:
        """Clusters of `model` this provider will execute (possibly none)."""
        graph = model if isinstance(model, GraphView) else GraphView(model)

        report = check_feasibility(graph, self.backend)
        if not report.ok:
            return []

        scan = self.oracle.scan(graph)
        clusters = self.partitioner.get_capability(graph, scan)
        for cap in clusters:
            LOGGER.info(
                "%s: %d node(s), %d input(s) (%d constant), %d output(s)",
                cap.name,
                len(cap.node_ids),
                len(cap.inputs),
                len(cap.constant_inputs),
                len(cap.outputs),
            )
        return clusters

    def compile_node(self, node: onnx.NodeProto, fused_model: onnx.ModelProto) -> ClusterKernel:
        """Compile one fused node. Raises `CompileFailure` / `MissingFunctionBody`."""
        name = node.name or node.op_type
        if name in self._compiled:
            raise ValueError(f"Cluster '{name}' is already compiled by this provider")

        dump_path = os.path.join(self.config.dump_dir, f"{name}.onnx") if self.config.dump_dir else None
        compiled, _sub = compile_fused_node(
            node,
            fused_model,
            self.backend,
            self.target,
            scratch_name=self.config.scratch_param,
            dump_path=dump_path,
        )
        self._compiled[name] = compiled
        return ClusterKernel(compiled, self.backend, self._lock, bind_by=self.config.bind_by)

    def compile(self, fused_model: onnx.ModelProto) -> Dict[str, ClusterKernel]:
        """Compile every fused node of `fused_model`; failures propagate."""
        kernels: Dict[str, ClusterKernel] = {}
        for node in fused_nodes(fused_model):
            kernel = self.compile_node(node, fused_model)
            kernels[kernel.name] = kernel
        return kernels

    def compiled(self, name: str) -> CompiledCluster:
        return self._compiled[name]

    def compiled_names(self) -> List[str]:
        return list(self._compiled)
