"""Public API surface.

Re-exports the commonly used functions/classes so scripts and hosts can
import a single module.
"""

from __future__ import annotations

from . import __version__

# Errors
from .errors import (
    CompileFailure,
    MissingFunctionBody,
    NodeTypeMismatch,
    OffloadError,
    UnsupportedInitializerLocation,
    UnsupportedModelShape,
)

# Graph view + ONNX helpers
from .graph import GraphView, NodeArg
from .onnx_utils import infer_shapes_safe, make_random_inputs, topo_sort

# Backends
from .backends import (
    BACKENDS,
    SCRATCH_PARAM,
    OrtBackend,
    ParamShape,
    ReferenceBackend,
    Target,
    create_backend,
)

# Pipeline stages
from .support import ALLOWED_ELEM_TYPES, SupportOracle, SupportScan, is_type_supported
from .feasibility import FeasibilityReport, check_feasibility, ensure_feasible
from .partition import OFFLOAD_DOMAIN, ClusterCapability, Partitioner, partition_clusters
from .boundary import ClusterBoundary, resolve_boundary
from .subgraph import build_cluster_model, fuse_clusters, fused_nodes, model_from_fused_node, save_model
from .compiler import CompiledCluster, compile_fused_node, compile_model
from .dispatch import BIND_BY_NAME, BIND_BY_POSITION, ClusterKernel, ExecutionState, KernelContext, run_kernel

# Host side
from .config import ProviderConfig, load_config, save_config
from .provider import OffloadProvider
from .runner import OffloadSession

__all__ = [
    "__version__",
    "ALLOWED_ELEM_TYPES",
    "BACKENDS",
    "BIND_BY_NAME",
    "BIND_BY_POSITION",
    "OFFLOAD_DOMAIN",
    "SCRATCH_PARAM",
    "ClusterBoundary",
    "ClusterCapability",
    "ClusterKernel",
    "CompileFailure",
    "CompiledCluster",
    "ExecutionState",
    "FeasibilityReport",
    "GraphView",
    "KernelContext",
    "MissingFunctionBody",
    "NodeArg",
    "NodeTypeMismatch",
    "OffloadError",
    "OffloadProvider",
    "OffloadSession",
    "OrtBackend",
    "ParamShape",
    "Partitioner",
    "ProviderConfig",
    "ReferenceBackend",
    "SupportOracle",
    "SupportScan",
    "Target",
    "UnsupportedInitializerLocation",
    "UnsupportedModelShape",
    "build_cluster_model",
    "check_feasibility",
    "compile_fused_node",
    "compile_model",
    "create_backend",
    "ensure_feasible",
    "fuse_clusters",
    "fused_nodes",
    "infer_shapes_safe",
    "is_type_supported",
    "load_config",
    "make_random_inputs",
    "model_from_fused_node",
    "partition_clusters",
    "resolve_boundary",
    "run_kernel",
    "save_config",
    "save_model",
    "topo_sort",
]
