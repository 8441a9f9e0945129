"""Accelerator backends.

A backend exposes a supported-op set, parses serialized ONNX sub-models,
compiles them for a target and allocates backend-side buffers. Compiled
programs expose their parameter-shape map and an `evaluate` call.
"""

from __future__ import annotations

from typing import AbstractSet, Optional

from .base import (
    SCRATCH_PARAM,
    Backend,
    CompiledProgram,
    ParamShape,
    ParsedModel,
    ParseResult,
    Target,
    default_supported_ops,
    parameter_shapes_from_model,
)
from .ort_backend import OrtBackend
from .reference_backend import ReferenceBackend

BACKENDS = ("reference", "ort")


def create_backend(
    name: str,
    *,
    supported_ops: Optional[AbstractSet[str]] = None,
    excluded_ops: Optional[AbstractSet[str]] = None,
) -> Backend:
    key = (name or "").strip().lower()
    if key == "reference":
        return ReferenceBackend(supported_ops=supported_ops, excluded_ops=excluded_ops)
    if key == "ort":
        return OrtBackend(supported_ops=supported_ops, excluded_ops=excluded_ops)
    raise ValueError(f"Unknown backend '{name}' (expected one of {BACKENDS})")


__all__ = [
    "BACKENDS",
    "SCRATCH_PARAM",
    "Backend",
    "CompiledProgram",
    "OrtBackend",
    "ParamShape",
    "ParsedModel",
    "ParseResult",
    "ReferenceBackend",
    "Target",
    "create_backend",
    "default_supported_ops",
    "parameter_shapes_from_model",
]
