"""Minimal host that runs a partitioned model end to end.

Offloaded clusters go through their `ClusterKernel`; every other node
(and any cluster the backend refused to compile, when the policy allows it)
runs on the host via `onnx.reference.ReferenceEvaluator`.
"""

from __future__ import annotations

import copy
import logging
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import onnx
from onnx import helper, numpy_helper
from onnx.reference import ReferenceEvaluator

from .dispatch import ClusterKernel, ExecutionState, run_kernel
from .errors import CompileFailure
from .graph import GraphView
from .onnx_utils import node_inputs
from .partition import OFFLOAD_DOMAIN, ClusterCapability
from .provider import OffloadProvider
from .subgraph import find_function, fuse_clusters, fused_nodes

LOGGER = logging.getLogger(__name__)


def _unique(names: Sequence[str]) -> List[str]:
    out: List[str] = []
    for n in names:
        if n and n not in out:
            out.append(n)
    return out


class _HostNode:
    """One node evaluated on the host by the ONNX reference evaluator."""

    def __init__(self, node: onnx.NodeProto, model: onnx.ModelProto) -> None:
        self.input_names = _unique(node_inputs(node))
        self.output_names = [n for n in node.output if n]

        g = helper.make_graph(
            [copy.deepcopy(node)],
            node.name or node.op_type,
            inputs=[helper.make_empty_tensor_value_info(n) for n in self.input_names],
            outputs=[helper.make_empty_tensor_value_info(n) for n in self.output_names],
        )
        m = helper.make_model(g, opset_imports=list(model.opset_import))
        m.ir_version = model.ir_version
        fn = find_function(model, node)
        if fn is not None:
            m.functions.append(copy.deepcopy(fn))
        self._evaluator = ReferenceEvaluator(m)

    def run(self, env: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        results = self._evaluator.run(None, {n: env[n] for n in self.input_names})
        return dict(zip(self.output_names, results))


class OffloadSession:
    """Partition, fuse, compile and run a model.

    `run` may be called from several threads; backend evaluations are
    serialized by the provider lock, host evaluations by a session lock.
    """

    def __init__(
        self,
        model: Union[str, Path, onnx.ModelProto],
        provider: Optional[OffloadProvider] = None,
    ) -> None:
        if isinstance(model, (str, Path)):
            model = onnx.load(str(model))
        self.provider = provider or OffloadProvider()

        graph = GraphView(model)
        self.input_names: List[str] = list(graph.inputs)
        self.output_names: List[str] = list(graph.outputs)
        self.capabilities: List[ClusterCapability] = self.provider.get_capability(graph)
        self.model = fuse_clusters(graph, self.capabilities)

        self.kernels: Dict[str, ClusterKernel] = {}
        self.host_clusters: List[str] = []
        for node in fused_nodes(self.model):
            try:
                kernel = self.provider.compile_node(node, self.model)
            except CompileFailure as e:
                if self.provider.config.on_compile_failure == "raise":
                    raise
                LOGGER.warning("%s; running '%s' on the host", e, node.name)
                self.host_clusters.append(node.name)
                continue
            self.kernels[kernel.name] = kernel

        self._states: Dict[str, ExecutionState] = {name: k.create_state() for name, k in self.kernels.items()}
        self._host: Dict[int, _HostNode] = {
            i: _HostNode(node, self.model)
            for i, node in enumerate(self.model.graph.node)
            if not (node.domain == OFFLOAD_DOMAIN and node.name in self.kernels)
        }
        self._host_lock = threading.Lock()
        self._initializers = {i.name: numpy_helper.to_array(i) for i in self.model.graph.initializer}
        self._closed = False
        # Guards _closed and the count of in-flight runs.
        self._cond = threading.Condition()
        self._active = 0

        LOGGER.info(
            "Session ready: %d offloaded cluster(s), %d host node(s)",
            len(self.kernels),
            len(self._host),
        )

    def run(
        self,
        feeds: Mapping[str, np.ndarray],
        output_names: Optional[Sequence[str]] = None,
    ) -> Dict[str, np.ndarray]:
        missing = [n for n in self.input_names if n not in feeds]
        if missing:
            raise ValueError(f"Missing input(s): {', '.join(missing)}")

        with self._cond:
            if self._closed:
                raise RuntimeError("Session is closed")
            self._active += 1
        try:
            env: Dict[str, np.ndarray] = dict(self._initializers)
            env.update({k: np.asarray(v) for k, v in feeds.items()})

            for i, node in enumerate(self.model.graph.node):
                host = self._host.get(i)
                if host is None:
                    outs = run_kernel(self.kernels[node.name], self._states[node.name], env, node.input, node.output)
                else:
                    with self._host_lock:
                        outs = host.run(env)
                env.update(outs)
        finally:
            with self._cond:
                self._active -= 1
                self._cond.notify_all()

        names = list(output_names) if output_names is not None else self.output_names
        return {n: env[n] for n in names}

    def close(self) -> None:
        """Refuse new runs, wait for in-flight ones, then release every state."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            while self._active:
                self._cond.wait()
        for name, state in self._states.items():
            self.kernels[name].release_state(state)
        self._states = {}

    def __enter__(self) -> "OffloadSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
