"""
ONNX Runtime Model Handle

Loads a frozen ONNX graph and runs it with named inputs and outputs
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import onnx
import onnxruntime as ort

from ..errors import ExecutionError, LoadError

logger = logging.getLogger(__name__)

MODEL_FILENAME = 'model.onnx'

# ONNX Runtime element types -> numpy dtypes
ONNX_DTYPES = {
    'tensor(float)': np.float32,
    'tensor(double)': np.float64,
    'tensor(float16)': np.float16,
    'tensor(int8)': np.int8,
    'tensor(int16)': np.int16,
    'tensor(int32)': np.int32,
    'tensor(int64)': np.int64,
    'tensor(uint8)': np.uint8,
    'tensor(uint16)': np.uint16,
    'tensor(bool)': np.bool_,
}


def resolve_model_path(location: Union[str, Path]) -> Path:
    """
    Find the .onnx file of a model location

    ``location`` is either the .onnx file itself, or a directory holding
    ``model.onnx`` or exactly one .onnx file.
    """
    location = Path(location)
    if location.is_file():
        return location
    if not location.is_dir():
        raise LoadError(f"Model not found: {location}")

    default = location / MODEL_FILENAME
    if default.is_file():
        return default

    candidates = sorted(location.glob('*.onnx'))
    if len(candidates) != 1:
        raise LoadError(
            f"Expected {MODEL_FILENAME} or a single .onnx file in {location}, "
            f"found {[c.name for c in candidates]}"
        )
    return candidates[0]


class ONNXModelHandle:
    """
    Wrapper around an ONNX Runtime session

    Features:
    - Graph validation at load time
    - Input/output namespace checks with the offending tensor name
    - Inputs cast to the dtype each graph input declares
    - Serialized ``execute`` calls, so one session can serve several workers

    Usage:
        >>> with ONNXModelHandle('/tmp/my_model/') as model:
        ...     outputs = model.execute({'x1': patches}, ['out_predict1'])
    """

    def __init__(
        self,
        model_path: Union[str, Path],
        providers: Optional[List[str]] = None,
        use_gpu: bool = True,
        check_model: bool = True
    ):
        """
        Args:
            model_path: .onnx file, or directory holding it
            providers: List of execution providers
            use_gpu: Whether to use GPU if available
            check_model: Validate the graph with the ONNX checker first
        """
        self.model_path = resolve_model_path(model_path)

        if check_model:
            try:
                onnx.checker.check_model(str(self.model_path))
            except Exception as e:
                raise LoadError(f"Invalid ONNX graph {self.model_path}: {e}") from e

        # Setup providers
        if providers is None:
            if use_gpu and 'CUDAExecutionProvider' in ort.get_available_providers():
                providers = ['CUDAExecutionProvider', 'CPUExecutionProvider']
            else:
                providers = ['CPUExecutionProvider']

        try:
            self.session = ort.InferenceSession(str(self.model_path), providers=providers)
        except Exception as e:
            raise LoadError(f"ONNX Runtime cannot load {self.model_path}: {e}") from e

        self._inputs = {node.name: node for node in self.session.get_inputs()}
        self._outputs = {node.name: node for node in self.session.get_outputs()}
        self._lock = threading.Lock()

        logger.info(f"Loaded ONNX model from {self.model_path}")
        logger.info(f"  Provider: {self.session.get_providers()[0]}")
        for node in self._inputs.values():
            logger.info(f"  Input: {node.name}, type: {node.type}, shape: {node.shape}")
        for node in self._outputs.values():
            logger.info(f"  Output: {node.name}, type: {node.type}, shape: {node.shape}")

    @property
    def input_names(self) -> Sequence[str]:
        return tuple(self._inputs)

    @property
    def output_names(self) -> Sequence[str]:
        return tuple(self._outputs)

    def execute(self, inputs: Mapping[str, np.ndarray], output_names: Sequence[str]) -> Dict[str, np.ndarray]:
        """
        Run the graph

        Args:
            inputs: Tensors by placeholder name
            output_names: Names of the tensors to fetch

        Returns:
            Fetched tensors by name
        """
        if self.session is None:
            raise ExecutionError(f"Model {self.model_path} has been closed")

        feed = {}
        for name, value in inputs.items():
            node = self._inputs.get(name)
            if node is None:
                raise ExecutionError(f"Placeholder {name!r} is not an input of the model", tensor=name)
            feed[name] = np.asarray(value, dtype=ONNX_DTYPES.get(node.type))

        for name in output_names:
            if name not in self._outputs:
                raise ExecutionError(f"Tensor {name!r} is not an output of the model", tensor=name)

        with self._lock:
            try:
                results = self.session.run(list(output_names), feed)
            except Exception as e:
                raise ExecutionError(f"Graph execution failed: {e}") from e

        return dict(zip(output_names, results))

    def close(self):
        """Release the session"""
        if self.session is not None:
            with self._lock:
                self.session = None
            logger.info(f"Released ONNX model {self.model_path}")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def load_model(location: Union[str, Path], **kwargs) -> ONNXModelHandle:
    """Load the model stored at ``location`` (see ``resolve_model_path``)"""
    return ONNXModelHandle(location, **kwargs)
