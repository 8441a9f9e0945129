"""Compile cluster sub-models into backend programs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import onnx

from .backends.base import SCRATCH_PARAM, Backend, CompiledProgram, ParamShape, Target
from .errors import CompileFailure
from .log_utils import preview_names
from .subgraph import model_from_fused_node, save_model

LOGGER = logging.getLogger(__name__)


@dataclass
class CompiledCluster:
    """A compiled program together with what the dispatcher needs to bind it.

    `param_shapes` is a snapshot of the program's parameter map taken at
    compile time; it is only read afterwards.
    """

    name: str
    program: CompiledProgram
    param_shapes: Dict[str, ParamShape]
    input_names: Tuple[str, ...]
    output_names: Tuple[str, ...]
    scratch: Dict[str, np.ndarray] = field(default_factory=dict)


def compile_model(
    model: onnx.ModelProto,
    backend: Backend,
    target: Target,
    *,
    name: Optional[str] = None,
    input_names: Optional[Sequence[str]] = None,
    output_names: Optional[Sequence[str]] = None,
    scratch_name: str = SCRATCH_PARAM,
) -> CompiledCluster:
    """Parse + compile a standalone sub-model.

    Any backend rejection raises `CompileFailure`; nothing is retried.
    """
    name = name or model.graph.name
    if input_names is None:
        init_names = {i.name for i in model.graph.initializer}
        input_names = [vi.name for vi in model.graph.input if vi.name not in init_names]
    if output_names is None:
        output_names = [vi.name for vi in model.graph.output]

    try:
        parsed = backend.parse(model.SerializeToString())
    except Exception as e:
        raise CompileFailure(name, f"parse raised {type(e).__name__}: {e}") from e
    if parsed.empty:
        raise CompileFailure(name, f"backend '{backend.name}' produced an empty program")
    if parsed.unsupported_nodes:
        LOGGER.warning(
            "Backend '%s' reports unsupported nodes in '%s': %s",
            backend.name,
            name,
            preview_names(parsed.unsupported_nodes),
        )

    try:
        program = backend.compile(parsed.program, target)
        param_shapes = dict(program.parameter_shapes())
    except Exception as e:
        raise CompileFailure(name, f"{type(e).__name__}: {e}") from e

    scratch: Dict[str, np.ndarray] = {}
    if scratch_name in param_shapes:
        shape = param_shapes[scratch_name]
        scratch[scratch_name] = backend.allocate(shape)
        LOGGER.info("Allocated scratch for '%s': %s (%d bytes)", name, shape.dims, shape.nbytes)

    LOGGER.info("Compiled '%s' for %s: %d parameter(s)", name, target.device, len(param_shapes))
    return CompiledCluster(
        name=name,
        program=program,
        param_shapes=param_shapes,
        input_names=tuple(input_names),
        output_names=tuple(output_names),
        scratch=scratch,
    )


def compile_fused_node(
    node: onnx.NodeProto,
    model: onnx.ModelProto,
    backend: Backend,
    target: Target,
    *,
    scratch_name: str = SCRATCH_PARAM,
    dump_path: Optional[str] = None,
) -> Tuple[CompiledCluster, onnx.ModelProto]:
    """Compile a fused node's attached body.

    Raises `MissingFunctionBody` straight away when the body is absent.
    With `dump_path`, the sub-model is written there before compiling.
    Returns the compiled cluster and the sub-model it was built from.
    """
    sub = model_from_fused_node(node, model)
    if dump_path:
        save_model(sub, dump_path)
    compiled = compile_model(
        sub,
        backend,
        target,
        name=node.name or node.op_type,
        input_names=list(node.input),
        output_names=list(node.output),
        scratch_name=scratch_name,
    )
    return compiled, sub
