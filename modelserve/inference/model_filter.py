"""
Multisource Model Filter

Computes one output region at a time: reads the required input region of
every source, shapes it into the tensors the model expects, runs the graph
and stacks the requested outputs along the band axis.

Two execution strategies exist, chosen once when the filter is built:
- PatchWiseExecution: one patch of exactly the field of view per foe block,
  patches batched as [N, C, fovy, fovx]
- FullyConvolutionalExecution: the whole required region as one
  [1, C, h, w] tensor, the graph returns the whole region at once
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..bundles import ExecutionMode, OutputSpec, SourceBundle
from ..data.raster import read_region
from ..deployment.base import ModelHandle
from ..errors import ExecutionError, GeometryError
from ..geometry import OutputGrid, Region, SourceGeometry
from ..placeholders import UserPlaceholder, as_feed

logger = logging.getLogger(__name__)


@dataclass
class SourceInput:
    """Pixels read for one source, covering ``region`` in source indices"""
    bundle: SourceBundle
    geometry: SourceGeometry
    region: Region
    data: np.ndarray


class PatchWiseExecution:
    """One inference sample per foe block"""

    mode = ExecutionMode.PATCH_WISE

    def __init__(self, batch_size: int = 0):
        """
        Args:
            batch_size: Maximum number of patches per graph call, 0 for all
                the patches of a tile in a single call
        """
        self.batch_size = batch_size

    def required_region(self, geometry: SourceGeometry, aligned: Region) -> Region:
        return geometry.patch_region(aligned)

    def run(self, model_filter: 'MultisourceModelFilter', aligned: Region,
            inputs: Sequence[SourceInput]) -> Dict[str, np.ndarray]:
        foex, foey = model_filter.output_spec.foe
        nbx, nby = aligned.width // foex, aligned.height // foey
        bx0, by0 = aligned.x // foex, aligned.y // foey

        # Patch window offsets inside each source buffer
        offsets = []
        for source in inputs:
            xs = [source.geometry.x.window_start(bx0 + i) - source.region.x for i in range(nbx)]
            ys = [source.geometry.y.window_start(by0 + j) - source.region.y for j in range(nby)]
            offsets.append((xs, ys))

        blocks = [(j, i) for j in range(nby) for i in range(nbx)]
        batch_size = self.batch_size or len(blocks)

        collected: Dict[str, List[np.ndarray]] = {name: [] for name in model_filter.output_spec.names}
        for start in range(0, len(blocks), batch_size):
            chunk = blocks[start:start + batch_size]
            feeds = {}
            for source, (xs, ys) in zip(inputs, offsets):
                fovx, fovy = source.bundle.patch_size
                feeds[source.bundle.placeholder] = np.stack([
                    source.data[:, ys[j]:ys[j] + fovy, xs[i]:xs[i] + fovx] for j, i in chunk
                ])

            results = model_filter.execute(feeds)
            for name in model_filter.output_spec.names:
                collected[name].append(_as_blocks(name, results[name], len(chunk), foex, foey))

        outputs = {}
        for name, parts in collected.items():
            blocks_out = np.concatenate(parts, axis=0)
            channels = blocks_out.shape[1]
            # [nby * nbx, C, foey, foex] -> [C, nby * foey, nbx * foex]
            outputs[name] = (blocks_out
                             .reshape(nby, nbx, channels, foey, foex)
                             .transpose(2, 0, 3, 1, 4)
                             .reshape(channels, nby * foey, nbx * foex))
        return outputs


class FullyConvolutionalExecution:
    """One inference sample per tile"""

    mode = ExecutionMode.FULLY_CONVOLUTIONAL

    def required_region(self, geometry: SourceGeometry, aligned: Region) -> Region:
        return geometry.dense_region(aligned)

    def run(self, model_filter: 'MultisourceModelFilter', aligned: Region,
            inputs: Sequence[SourceInput]) -> Dict[str, np.ndarray]:
        feeds = {source.bundle.placeholder: source.data[np.newaxis] for source in inputs}
        results = model_filter.execute(feeds)

        outputs = {}
        for name in model_filter.output_spec.names:
            tensor = np.asarray(results[name])
            if tensor.ndim == 3:
                tensor = tensor[:, np.newaxis]
            if tensor.ndim != 4 or tensor.shape[0] != 1 or tensor.shape[2:] != aligned.shape:
                raise ExecutionError(
                    f"Output {name!r} has shape {tensor.shape}, expected "
                    f"[1, C, {aligned.height}, {aligned.width}] for region {aligned}",
                    tensor=name
                )
            outputs[name] = tensor[0]
        return outputs


def _as_blocks(name: str, tensor: Any, n: int, foex: int, foey: int) -> np.ndarray:
    """Normalise a patch-wise output to [N, C, foey, foex]"""
    tensor = np.asarray(tensor)
    if tensor.ndim == 0 or tensor.shape[0] != n:
        raise ExecutionError(
            f"Output {name!r} has shape {tensor.shape}, expected a batch of {n} samples",
            tensor=name
        )
    if tensor.ndim == 1:
        tensor = tensor.reshape(n, 1, 1, 1)
    elif tensor.ndim == 2:
        tensor = tensor.reshape(n, tensor.shape[1], 1, 1)
    elif tensor.ndim == 3:
        tensor = tensor[:, np.newaxis]
    elif tensor.ndim != 4:
        raise ExecutionError(f"Output {name!r} has unsupported rank {tensor.ndim}", tensor=name)

    if tensor.shape[2:] != (foey, foex):
        raise ExecutionError(
            f"Output {name!r} has spatial shape {tensor.shape[2:]}, "
            f"but the field of expression is {foey}x{foex}",
            tensor=name
        )
    return tensor


def execution_for(mode: ExecutionMode, batch_size: int = 0):
    """Execution strategy of a mode"""
    if mode is ExecutionMode.FULLY_CONVOLUTIONAL:
        return FullyConvolutionalExecution()
    return PatchWiseExecution(batch_size=batch_size)


class MultisourceModelFilter:
    """
    Produces output regions from several sources through one model

    Usage:
        >>> model_filter = MultisourceModelFilter(model, bundles, spec, grid)
        >>> model_filter.check_model()
        >>> tile = model_filter.compute_tile(Region(0, 0, 64, 64))  # [bands, 64, 64]
    """

    def __init__(
        self,
        model: ModelHandle,
        bundles: Sequence[SourceBundle],
        output_spec: OutputSpec,
        grid: OutputGrid,
        user_placeholders: Sequence[UserPlaceholder] = (),
        mode: ExecutionMode = ExecutionMode.PATCH_WISE,
        batch_size: int = 0,
        padding: str = 'edge'
    ):
        """
        Args:
            model: Model handle (see ``modelserve.deployment.ModelHandle``)
            bundles: Sealed source bundles
            output_spec: Output tensors specification
            grid: Output grid computed from the bundles
            user_placeholders: Constant tensors bound on every call
            mode: Execution mode
            batch_size: Patches per call in patch-wise mode, 0 for a whole tile
            padding: Border policy for input regions exceeding a source
        """
        self.model = model
        self.bundles = tuple(bundles)
        self.output_spec = output_spec
        self.grid = grid
        self.user_placeholders = tuple(user_placeholders)
        self.execution = execution_for(mode, batch_size)
        self.padding = padding

        self._constants = as_feed(self.user_placeholders)
        self._channels: Optional[Tuple[int, ...]] = None
        self._channels_lock = threading.Lock()
        # Model handles are not assumed thread-safe; one graph call at a time
        self._execute_lock = threading.Lock()

    @property
    def output_region(self) -> Region:
        return self.grid.region

    @property
    def channels(self) -> Optional[Tuple[int, ...]]:
        """Channel count per output tensor, known after the first tile"""
        return self._channels

    def check_model(self):
        """Fail early if a bound or requested tensor is unknown to the model"""
        inputs = set(self.model.input_names)
        bound = [bundle.placeholder for bundle in self.bundles] + list(self._constants)
        for name in bound:
            if name not in inputs:
                raise ExecutionError(
                    f"Placeholder {name!r} is not an input of the model (inputs: {sorted(inputs)})",
                    tensor=name
                )

        outputs = set(self.model.output_names)
        for name in self.output_spec.names:
            if name not in outputs:
                raise ExecutionError(
                    f"Tensor {name!r} is not an output of the model (outputs: {sorted(outputs)})",
                    tensor=name
                )

    def required_regions(self, region: Region) -> List[Region]:
        """Input region of each source needed to compute ``region``"""
        aligned = region.align(*self.output_spec.foe)
        return [self.execution.required_region(geometry, aligned) for geometry in self.grid.sources]

    def execute(self, feeds: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Run the model on source feeds plus the user placeholders"""
        inputs = dict(self._constants)
        inputs.update(feeds)
        with self._execute_lock:
            results = self.model.execute(inputs, list(self.output_spec.names))
        for name in self.output_spec.names:
            if name not in results:
                raise ExecutionError(f"Model did not return tensor {name!r}", tensor=name)
        return results

    def compute_tile(self, region: Region) -> np.ndarray:
        """
        Compute the pixels of an output region

        Args:
            region: Region of the output grid

        Returns:
            float32 array [bands, region.height, region.width], bands being the
            channels of every output tensor, in ``output_spec.names`` order
        """
        if region.is_empty() or not self.output_region.contains(region):
            raise GeometryError(f"Region {region} is not inside the output region {self.output_region}")

        aligned = region.align(*self.output_spec.foe)
        inputs = []
        for bundle, geometry in zip(self.bundles, self.grid.sources):
            required = self.execution.required_region(geometry, aligned)
            data = read_region(bundle.image_source, required, self.padding)
            inputs.append(SourceInput(bundle=bundle, geometry=geometry, region=required, data=data))

        outputs = self.execution.run(self, aligned, inputs)
        self._check_channels(tuple(outputs[name].shape[0] for name in self.output_spec.names))

        stacked = np.concatenate([outputs[name] for name in self.output_spec.names], axis=0)
        rows, cols = region.slices(aligned)
        return np.ascontiguousarray(stacked[:, rows, cols], dtype=np.float32)

    def _check_channels(self, channels: Tuple[int, ...]):
        with self._channels_lock:
            if self._channels is None:
                self._channels = channels
                for name, count in zip(self.output_spec.names, channels):
                    logger.info(f"Output tensor {name}: {count} channel(s)")
            elif channels != self._channels:
                raise ExecutionError(
                    f"Output channel counts changed from {self._channels} to {channels} "
                    f"for tensors {list(self.output_spec.names)}"
                )
