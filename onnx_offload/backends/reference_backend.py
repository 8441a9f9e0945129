from __future__ import annotations

import logging
from typing import AbstractSet, Dict, FrozenSet, Mapping, Optional

import numpy as np
import onnx
from onnx.reference import ReferenceEvaluator

from ..onnx_utils import infer_shapes_safe
from .base import ParamShape, ParsedModel, ParseResult, Target, default_supported_ops, parameter_shapes_from_model

LOGGER = logging.getLogger(__name__)


class _ReferenceProgram:
    def __init__(self, model: onnx.ModelProto, shapes: Dict[str, ParamShape]) -> None:
        self._evaluator = ReferenceEvaluator(model)
        self._shapes = shapes
        self._input_names = list(self._evaluator.input_names)
        self._output_names = list(self._evaluator.output_names)

    def parameter_shapes(self) -> Mapping[str, ParamShape]:
        return self._shapes

    def evaluate(self, params: Mapping[str, np.ndarray]) -> None:
        feeds = {name: params[name] for name in self._input_names}
        results = self._evaluator.run(None, feeds)
        for name, value in zip(self._output_names, results):
            buf = params[name]
            np.copyto(buf, np.asarray(value).astype(buf.dtype, copy=False).reshape(buf.shape))


class ReferenceBackend:
    """Host backend built on `onnx.reference.ReferenceEvaluator`.

    Mostly useful to exercise the partition/compile/dispatch path without an
    accelerator. The supported-op set defaults to the ONNX default domain and
    can be restricted (`supported_ops`) or reduced (`excluded_ops`).
    """

    name = "reference"
    output_param_name: Optional[str] = None

    def __init__(
        self,
        supported_ops: Optional[AbstractSet[str]] = None,
        excluded_ops: Optional[AbstractSet[str]] = None,
    ) -> None:
        ops = frozenset(supported_ops) if supported_ops is not None else default_supported_ops()
        self._ops = ops - frozenset(excluded_ops or ())

    def supported_ops(self) -> FrozenSet[str]:
        return self._ops

    def parse(self, model_bytes: bytes) -> ParseResult:
        try:
            model = onnx.load_model_from_string(model_bytes)
            onnx.checker.check_model(model)
        except Exception as e:
            LOGGER.warning("Reference backend could not parse model: %s", e)
            return ParseResult(program=None)

        unsupported = [
            n.name or f"{n.op_type}_{i}"
            for i, n in enumerate(model.graph.node)
            if n.op_type not in self._ops
        ]
        return ParseResult(program=ParsedModel(model=model), unsupported_nodes=unsupported)

    def compile(self, parsed: ParsedModel, target: Target) -> _ReferenceProgram:
        if target.device != "cpu":
            raise ValueError(f"reference backend only targets cpu, not '{target.device}'")
        model = infer_shapes_safe(parsed.model)
        return _ReferenceProgram(model, parameter_shapes_from_model(model))

    def allocate(self, shape: ParamShape) -> np.ndarray:
        return np.zeros(shape.dims, dtype=shape.dtype)
