from __future__ import annotations

import logging
from typing import AbstractSet, Any, Dict, FrozenSet, List, Mapping, Optional

import numpy as np
import onnx

from ..onnx_utils import infer_shapes_safe
from .base import ParamShape, ParsedModel, ParseResult, Target, default_supported_ops, parameter_shapes_from_model

LOGGER = logging.getLogger(__name__)

_GPU_PROVIDERS = ["ROCMExecutionProvider", "CUDAExecutionProvider"]


class _OrtProgram:
    def __init__(self, session: Any, shapes: Dict[str, ParamShape]) -> None:
        self.session = session
        self._shapes = shapes
        self.input_names = [i.name for i in session.get_inputs()]
        self.output_names = [o.name for o in session.get_outputs()]

    def parameter_shapes(self) -> Mapping[str, ParamShape]:
        return self._shapes

    def evaluate(self, params: Mapping[str, np.ndarray]) -> None:
        # Inputs and pre-allocated outputs are bound in place, no copies.
        binding = self.session.io_binding()
        for name in self.input_names:
            binding.bind_cpu_input(name, params[name])
        for name in self.output_names:
            buf = params[name]
            binding.bind_output(
                name,
                device_type="cpu",
                device_id=0,
                element_type=buf.dtype.type,
                shape=list(buf.shape),
                buffer_ptr=buf.ctypes.data,
            )
        self.session.run_with_iobinding(binding)


class OrtBackend:
    """ONNXRuntime backend.

    The execution provider list is derived from the target unless given
    explicitly. onnxruntime is imported lazily so the package imports without
    it (tests may skip).
    """

    name = "ort"
    output_param_name: Optional[str] = None

    def __init__(
        self,
        providers: Optional[List[str]] = None,
        supported_ops: Optional[AbstractSet[str]] = None,
        excluded_ops: Optional[AbstractSet[str]] = None,
        sess_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.providers = list(providers) if providers else None
        self.sess_options = sess_options or {}
        ops = frozenset(supported_ops) if supported_ops is not None else default_supported_ops()
        self._ops = ops - frozenset(excluded_ops or ())

    def supported_ops(self) -> FrozenSet[str]:
        return self._ops

    def _providers_for(self, target: Target) -> List[str]:
        import onnxruntime as ort  # type: ignore

        if self.providers:
            return list(self.providers)
        if target.device == "cpu":
            return ["CPUExecutionProvider"]
        available = set(ort.get_available_providers())
        gpu = [p for p in _GPU_PROVIDERS if p in available]
        if not gpu:
            raise RuntimeError(f"No GPU execution provider available (have {sorted(available)})")
        return gpu + ["CPUExecutionProvider"]

    def parse(self, model_bytes: bytes) -> ParseResult:
        try:
            model = onnx.load_model_from_string(model_bytes)
            onnx.checker.check_model(model)
        except Exception as e:
            LOGGER.warning("ORT backend could not parse model: %s", e)
            return ParseResult(program=None)

        unsupported = [
            n.name or f"{n.op_type}_{i}"
            for i, n in enumerate(model.graph.node)
            if n.op_type not in self._ops
        ]
        return ParseResult(program=ParsedModel(model=model), unsupported_nodes=unsupported)

    def compile(self, parsed: ParsedModel, target: Target) -> _OrtProgram:
        import onnxruntime as ort  # type: ignore

        model = infer_shapes_safe(parsed.model)
        shapes = parameter_shapes_from_model(model)

        so = ort.SessionOptions()
        for k, v in self.sess_options.items():
            if hasattr(so, k):
                setattr(so, k, v)

        providers = self._providers_for(target)
        if target.device == "gpu":
            provider_options = [{"device_id": int(target.device_id)} if p != "CPUExecutionProvider" else {} for p in providers]
            sess = ort.InferenceSession(
                model.SerializeToString(),
                sess_options=so,
                providers=providers,
                provider_options=provider_options,
            )
        else:
            sess = ort.InferenceSession(model.SerializeToString(), sess_options=so, providers=providers)
        return _OrtProgram(sess, shapes)

    def allocate(self, shape: ParamShape) -> np.ndarray:
        return np.zeros(shape.dims, dtype=shape.dtype)
