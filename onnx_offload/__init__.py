"""ONNX accelerator offload: partition a graph, compile the offloadable parts, dispatch them."""

__version__ = "0.1.0"
