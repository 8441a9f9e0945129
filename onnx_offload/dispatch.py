"""Runtime binding and dispatch of compiled clusters.

Each compiled cluster is exposed to the host through three operations:

- `create_state()`: resolve parameter bindings once, build the ExecutionState
- `compute(state, context)`: bind the current tensors and evaluate
- `release_state(state)`: drop the state

Evaluations of every program owned by one provider run under one shared
lock: the backends' evaluation context is not known to be reentrant.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from .backends.base import Backend, CompiledProgram, ParamShape
from .compiler import CompiledCluster
from .errors import NodeTypeMismatch
from .onnx_utils import elem_type_name

LOGGER = logging.getLogger(__name__)

BIND_BY_POSITION = "position"
BIND_BY_NAME = "name"
BIND_MODES = (BIND_BY_POSITION, BIND_BY_NAME)


class KernelContext:
    """Per-call I/O of one fused node, provided by the host.

    Inputs are addressed by ordinal or by tensor name; outputs are allocated
    on request with the shape and dtype the program declares.
    """

    def __init__(
        self,
        inputs: Sequence[np.ndarray],
        input_names: Sequence[str],
        output_names: Sequence[str],
    ) -> None:
        if len(inputs) != len(input_names):
            raise ValueError(f"Got {len(inputs)} input tensors for {len(input_names)} input names")
        self._inputs = list(inputs)
        self.input_names = list(input_names)
        self.output_names = list(output_names)
        self._outputs: List[Optional[np.ndarray]] = [None] * len(self.output_names)

    def input(self, index: int) -> np.ndarray:
        return self._inputs[index]

    def input_by_name(self, name: str) -> np.ndarray:
        try:
            return self._inputs[self.input_names.index(name)]
        except ValueError:
            raise KeyError(f"No input named '{name}'") from None

    def output(self, index: int, shape: Sequence[int], dtype: np.dtype) -> np.ndarray:
        buf = np.empty(tuple(shape), dtype=dtype)
        self._outputs[index] = buf
        return buf

    def output_by_name(self, name: str, shape: Sequence[int], dtype: np.dtype) -> np.ndarray:
        try:
            index = self.output_names.index(name)
        except ValueError:
            raise KeyError(f"No output named '{name}'") from None
        return self.output(index, shape, dtype)

    @property
    def outputs(self) -> List[Optional[np.ndarray]]:
        return list(self._outputs)

    def output_dict(self) -> Dict[str, np.ndarray]:
        return {n: v for n, v in zip(self.output_names, self._outputs) if v is not None}


# ---------------------------- Parameter bindings ----------------------------


@dataclass(frozen=True)
class InputBinding:
    param: str
    shape: ParamShape
    position: int
    tensor: str


@dataclass(frozen=True)
class SingleOutputBinding:
    """The program's only result, bound to output 0 of the fused node."""

    param: str
    shape: ParamShape
    tensor: str


@dataclass(frozen=True)
class OutputBinding:
    """One of several results, matched to a fused-node output by name."""

    param: str
    shape: ParamShape
    position: int
    tensor: str


@dataclass(frozen=True)
class ScratchBinding:
    param: str
    shape: ParamShape


ParamBinding = Union[InputBinding, SingleOutputBinding, OutputBinding, ScratchBinding]


def resolve_bindings(
    compiled: CompiledCluster,
    *,
    output_param_name: Optional[str] = None,
) -> Tuple[ParamBinding, ...]:
    """Map every program parameter to a fused-node input, output or scratch slot.

    Parameters are matched by name, never by their position in the
    program's parameter map.
    """
    input_pos: Dict[str, int] = {}
    for i, name in enumerate(compiled.input_names):
        input_pos.setdefault(name, i)
    output_pos: Dict[str, int] = {}
    for i, name in enumerate(compiled.output_names):
        output_pos.setdefault(name, i)
    single = len(compiled.output_names) == 1

    bindings: List[ParamBinding] = []
    for param, shape in compiled.param_shapes.items():
        if param in input_pos:
            bindings.append(InputBinding(param, shape, input_pos[param], param))
        elif param in output_pos:
            if single:
                bindings.append(SingleOutputBinding(param, shape, param))
            else:
                bindings.append(OutputBinding(param, shape, output_pos[param], param))
        elif single and output_param_name is not None and param == output_param_name:
            bindings.append(SingleOutputBinding(param, shape, compiled.output_names[0]))
        else:
            bindings.append(ScratchBinding(param, shape))
    return tuple(bindings)


@dataclass
class ExecutionState:
    name: str
    program: CompiledProgram
    bindings: Tuple[ParamBinding, ...]
    scratch: Dict[str, np.ndarray]
    lock: threading.Lock
    bind_by: str = BIND_BY_POSITION
    released: bool = field(default=False)


class ComputeFunctions(Protocol):
    def create_state(self) -> ExecutionState: ...

    def compute(self, state: ExecutionState, context: KernelContext) -> None: ...

    def release_state(self, state: ExecutionState) -> None: ...


class ClusterKernel:
    """Host-facing dispatch entry for one compiled cluster."""

    def __init__(
        self,
        compiled: CompiledCluster,
        backend: Backend,
        lock: threading.Lock,
        *,
        bind_by: str = BIND_BY_POSITION,
    ) -> None:
        if bind_by not in BIND_MODES:
            raise ValueError(f"bind_by must be one of {BIND_MODES}, got '{bind_by}'")
        self.compiled = compiled
        self.backend = backend
        self.lock = lock
        self.bind_by = bind_by

    @property
    def name(self) -> str:
        return self.compiled.name

    def create_state(self) -> ExecutionState:
        bindings = resolve_bindings(self.compiled, output_param_name=getattr(self.backend, "output_param_name", None))

        scratch = dict(self.compiled.scratch)
        for b in bindings:
            if isinstance(b, ScratchBinding) and b.param not in scratch:
                LOGGER.warning("'%s': parameter '%s' matches no input/output, binding a workspace buffer", self.name, b.param)
                scratch[b.param] = self.backend.allocate(b.shape)

        return ExecutionState(
            name=self.name,
            program=self.compiled.program,
            bindings=bindings,
            scratch=scratch,
            lock=self.lock,
            bind_by=self.bind_by,
        )

    def release_state(self, state: ExecutionState) -> None:
        state.released = True
        state.scratch = {}
        state.bindings = ()

    def compute(self, state: ExecutionState, context: KernelContext) -> None:
        if state.released:
            raise RuntimeError(f"Execution state of '{state.name}' has been released")

        by_name = state.bind_by == BIND_BY_NAME
        params: Dict[str, np.ndarray] = {}
        for b in state.bindings:
            if isinstance(b, InputBinding):
                arr = context.input_by_name(b.tensor) if by_name else context.input(b.position)
                params[b.param] = _bind_input(b, arr)
            elif isinstance(b, SingleOutputBinding):
                if by_name:
                    params[b.param] = context.output_by_name(b.tensor, b.shape.dims, b.shape.dtype)
                else:
                    params[b.param] = context.output(0, b.shape.dims, b.shape.dtype)
            elif isinstance(b, OutputBinding):
                if by_name:
                    params[b.param] = context.output_by_name(b.tensor, b.shape.dims, b.shape.dtype)
                else:
                    params[b.param] = context.output(b.position, b.shape.dims, b.shape.dtype)
            else:
                params[b.param] = state.scratch[b.param]

        LOGGER.debug("'%s': evaluating with %d bound parameter(s)", state.name, len(params))
        with state.lock:
            state.program.evaluate(params)


def _bind_input(binding: InputBinding, tensor: np.ndarray) -> np.ndarray:
    arr = np.asarray(tensor)
    expected = binding.shape.dtype
    if arr.dtype != expected:
        raise NodeTypeMismatch(binding.param, elem_type_name(binding.shape.elem_type), arr.dtype)
    if tuple(arr.shape) != tuple(binding.shape.dims):
        raise ValueError(
            f"Parameter '{binding.param}' expects shape {tuple(binding.shape.dims)}, got {tuple(arr.shape)}"
        )
    # No copy unless the caller's buffer is not C-contiguous.
    return np.ascontiguousarray(arr)


def run_kernel(
    kernel: ComputeFunctions,
    state: ExecutionState,
    inputs: Mapping[str, np.ndarray],
    input_names: Sequence[str],
    output_names: Sequence[str],
) -> Dict[str, np.ndarray]:
    """Convenience: build a context from named tensors, compute, return outputs."""
    ctx = KernelContext([inputs[n] for n in input_names], input_names, output_names)
    kernel.compute(state, ctx)
    return ctx.output_dict()
