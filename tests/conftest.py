import threading
from typing import Callable, Dict, List, Sequence

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper

from modelserve.data import ArrayImageSource
from modelserve.errors import ExecutionError


def box_mean(x: np.ndarray, ky: int, kx: int) -> np.ndarray:
    """Valid box filter over [N, C, H, W]; fixed summation order so results are reproducible bit for bit"""
    oh, ow = x.shape[2] - ky + 1, x.shape[3] - kx + 1
    acc = np.zeros(x.shape[:2] + (oh, ow), dtype=np.float64)
    for dy in range(ky):
        for dx in range(kx):
            acc += x[:, :, dy:dy + oh, dx:dx + ow]
    return (acc / (ky * kx)).astype(np.float32)


def box_max(x: np.ndarray, ky: int, kx: int) -> np.ndarray:
    oh, ow = x.shape[2] - ky + 1, x.shape[3] - kx + 1
    acc = np.full(x.shape[:2] + (oh, ow), -np.inf, dtype=np.float32)
    for dy in range(ky):
        for dx in range(kx):
            acc = np.maximum(acc, x[:, :, dy:dy + oh, dx:dx + ow])
    return acc


class FakeModel:
    """In-memory model handle recording every call"""

    def __init__(self, input_names: Sequence[str], outputs: Dict[str, Callable[[Dict[str, np.ndarray]], np.ndarray]]):
        self._input_names = tuple(input_names)
        self.outputs = outputs
        self.calls: List[Dict[str, np.ndarray]] = []
        self.closed = False
        self._lock = threading.Lock()

    @property
    def input_names(self):
        return self._input_names

    @property
    def output_names(self):
        return tuple(self.outputs)

    def execute(self, inputs, output_names):
        if self.closed:
            raise ExecutionError("model closed")
        with self._lock:
            self.calls.append(dict(inputs))
        return {name: self.outputs[name](inputs) for name in output_names}

    def close(self):
        self.closed = True


def make_box_model(kernel=(16, 16), placeholder='x1', extra_inputs=()):
    """
    Two outputs, as in the classification example:
    - out_predict1: per-channel box mean, [N, C, h, w]
    - out_proba1: box max of band 0, returned as [N, h, w]
    """
    ky, kx = kernel
    return FakeModel(
        input_names=(placeholder,) + tuple(extra_inputs),
        outputs={
            'out_predict1': lambda feed: box_mean(feed[placeholder], ky, kx),
            'out_proba1': lambda feed: box_max(feed[placeholder][:, :1], ky, kx)[:, 0],
        }
    )


class CheckedSource(ArrayImageSource):
    """Array source that fails on any read outside its bounds"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reads = []

    def read(self, region):
        assert region.x >= 0 and region.y >= 0, region
        assert region.x_end <= self.width and region.y_end <= self.height, region
        self.reads.append(region)
        return super().read(region)


def write_patch_stats_model(path, channels=3):
    """
    ONNX graph with a source input x1 [N, C, H, W] and a scalar input 'scale':
    - out_predict1: max over bands and pixels, [N, 1, 1, 1]
    - out_proba1: per-band mean times scale, [N, C, 1, 1]
    """
    inputs = [
        helper.make_tensor_value_info('x1', TensorProto.FLOAT, ['N', channels, 'H', 'W']),
        helper.make_tensor_value_info('scale', TensorProto.FLOAT, []),
    ]
    outputs = [
        helper.make_tensor_value_info('out_predict1', TensorProto.FLOAT, ['N', 1, 1, 1]),
        helper.make_tensor_value_info('out_proba1', TensorProto.FLOAT, ['N', channels, 1, 1]),
    ]
    nodes = [
        helper.make_node('ReduceMax', ['x1'], ['out_predict1'], axes=[1, 2, 3], keepdims=1),
        helper.make_node('ReduceMean', ['x1'], ['mean'], axes=[2, 3], keepdims=1),
        helper.make_node('Mul', ['mean', 'scale'], ['out_proba1']),
    ]
    graph = helper.make_graph(nodes, 'patch_stats', inputs, outputs)
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid('', 13)])
    model.ir_version = 8
    onnx.checker.check_model(model)
    onnx.save(model, str(path))
    return path


def patch_stats_reference(image, fov, scale):
    """Expected [1 + C, H, W] output of the patch stats graph, edge padding"""
    halo = fov - 1
    pads = ((0, 0), (halo // 2, halo - halo // 2), (halo // 2, halo - halo // 2))
    padded = np.pad(image, pads, mode='edge')
    windows = np.lib.stride_tricks.sliding_window_view(padded, (fov, fov), axis=(1, 2))
    peak = windows.max(axis=(0, 3, 4))[np.newaxis]
    mean = windows.mean(axis=(3, 4), dtype=np.float64) * scale
    return np.concatenate([peak, mean], axis=0).astype(np.float32)


@pytest.fixture
def onnx_model_dir(tmp_path):
    model_dir = tmp_path / 'my_model'
    model_dir.mkdir()
    write_patch_stats_model(model_dir / 'model.onnx')
    return model_dir


@pytest.fixture
def image():
    rng = np.random.default_rng(0)
    return (rng.random((3, 37, 45)) * 100).astype(np.float32)


@pytest.fixture
def fake_model():
    return FakeModel


@pytest.fixture
def box_model():
    return make_box_model


@pytest.fixture
def checked_source():
    return CheckedSource
