"""
Deployment Module

Model handle interface and ONNX Runtime loading
"""

from .base import ModelHandle
from .onnx_inference import ONNXModelHandle, load_model, resolve_model_path

__all__ = [
    'ModelHandle',
    'ONNXModelHandle',
    'load_model',
    'resolve_model_path'
]
