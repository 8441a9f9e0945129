"""Error types raised by the partition / compile / dispatch pipeline."""

from __future__ import annotations


class OffloadError(RuntimeError):
    """Base error for onnx_offload."""


class UnsupportedModelShape(OffloadError):
    """The graph has more than one output, a dynamic input shape, or the backend
    produced an empty program for it."""


class UnsupportedInitializerLocation(OffloadError):
    """An initializer stores its payload in an external data file."""


class NodeTypeMismatch(OffloadError):
    """A runtime tensor's element type differs from the compiled parameter type."""

    def __init__(self, param: str, expected: object, actual: object) -> None:
        super().__init__(f"Parameter '{param}' expects {expected}, got {actual}")
        self.param = param
        self.expected = expected
        self.actual = actual


class CompileFailure(OffloadError):
    """The backend rejected a cluster sub-model."""

    def __init__(self, cluster: str, reason: str) -> None:
        super().__init__(f"Compilation of '{cluster}' failed: {reason}")
        self.cluster = cluster
        self.reason = reason


class MissingFunctionBody(OffloadError):
    """A fused node has no attached function body."""
