from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional, Protocol, Tuple

import numpy as np
import onnx

from ..onnx_utils import elemtype_from_vi, np_dtype, shape_from_vi

# Reserved parameter name a backend uses for its internal workspace.
SCRATCH_PARAM = "scratch"

_DEVICES = ("cpu", "gpu")


@dataclass(frozen=True)
class Target:
    """Compilation target descriptor."""

    device: str = "cpu"
    device_id: int = 0

    def __post_init__(self) -> None:
        if self.device not in _DEVICES:
            raise ValueError(f"Device '{self.device}' is not supported (expected one of {_DEVICES})")
        if int(self.device_id) < 0:
            raise ValueError("device_id must be >= 0")


@dataclass(frozen=True)
class ParamShape:
    """Static element type + dims of one compiled-program parameter."""

    elem_type: int
    dims: Tuple[int, ...]

    @property
    def dtype(self) -> np.dtype:
        return np_dtype(self.elem_type)

    @property
    def nbytes(self) -> int:
        n = 1
        for d in self.dims:
            n *= int(d)
        return n * self.dtype.itemsize


@dataclass
class ParsedModel:
    """Backend intermediate produced by `Backend.parse`."""

    model: onnx.ModelProto

    def __len__(self) -> int:
        return len(self.model.graph.node)


@dataclass
class ParseResult:
    program: Optional[ParsedModel]
    unsupported_nodes: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.program is None or len(self.program) == 0


class CompiledProgram(Protocol):
    """Executable artifact for one cluster.

    `parameter_shapes()` is authoritative. Its iteration order is defined by
    the backend and is not sorted by name.
    """

    def parameter_shapes(self) -> Mapping[str, ParamShape]: ...

    def evaluate(self, params: Mapping[str, np.ndarray]) -> None: ...


class Backend(Protocol):
    """Backend contract.

    - `supported_ops`: op types the backend can run
    - `parse`: serialized ONNX bytes -> intermediate (or unsupported node names)
    - `compile`: intermediate + target -> CompiledProgram
    - `allocate`: backend-side buffer for a parameter (scratch memory)
    """

    name: str
    # Parameter name used for the result of single-output programs, if any.
    output_param_name: Optional[str]

    def supported_ops(self) -> FrozenSet[str]: ...

    def parse(self, model_bytes: bytes) -> ParseResult: ...

    def compile(self, parsed: ParsedModel, target: Target) -> CompiledProgram: ...

    def allocate(self, shape: ParamShape) -> np.ndarray: ...


def parameter_shapes_from_model(model: onnx.ModelProto) -> Dict[str, ParamShape]:
    """Parameter map for a model whose I/O is fully typed with static dims.

    Order: declared outputs first, then declared inputs.
    Raises ValueError for an untyped or dynamic parameter.
    """
    init_names = {i.name for i in model.graph.initializer}
    vis = list(model.graph.output) + [vi for vi in model.graph.input if vi.name not in init_names]

    out: Dict[str, ParamShape] = {}
    for vi in vis:
        et = elemtype_from_vi(vi)
        shp = shape_from_vi(vi)
        if et is None:
            raise ValueError(f"parameter '{vi.name}' has no element type")
        if shp is None or any(d is None for d in shp):
            raise ValueError(f"parameter '{vi.name}' has no static shape ({shp})")
        out[vi.name] = ParamShape(elem_type=et, dims=tuple(int(d) for d in shp))
    return out


def default_supported_ops() -> FrozenSet[str]:
    """Op types of the default ONNX domain known to the installed onnx package."""
    return frozenset(s.name for s in onnx.defs.get_all_schemas() if s.domain in ("", "ai.onnx"))
