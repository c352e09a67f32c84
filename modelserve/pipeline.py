"""
Model Serving Pipeline

Composes the source bundles, the output specification and the model handle,
and runs them through the streaming driver.

Lifecycle:
    DRAFT    sources can be added
    SEALED   bundles frozen, output grid and execution mode fixed
    RUNNING  tiles are being computed
    FINISHED model handle released
"""

import enum
import logging
import threading
from typing import Any, Optional, Sequence, Tuple

from .bundles import ExecutionMode, OutputSpec, SourceBundle, SourceBundleManager
from .data.raster import PADDING_MODES, ArraySink, RasterImageSource
from .deployment.base import ModelHandle
from .errors import ConfigurationError
from .geometry import OutputGrid, compute_output_grid
from .inference.model_filter import MultisourceModelFilter
from .inference.streaming import StreamingDriver
from .placeholders import UserPlaceholder, parse_expressions

logger = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    DRAFT = 'draft'
    SEALED = 'sealed'
    RUNNING = 'running'
    FINISHED = 'finished'


class ModelServePipeline:
    """
    Serve a frozen model over one or more co-registered rasters

    The pipeline owns the model handle: it is closed when ``run`` returns,
    after every inference call has completed.

    Usage:
        >>> pipeline = ModelServePipeline(model, OutputSpec(names=('out_predict1',)))
        >>> pipeline.add_source(RasterImageSource('spot6pms.tif'), 16, 16, 'x1')
        >>> pipeline.seal()
        >>> sink = pipeline.run()          # ArraySink, result in sink.array
    """

    def __init__(
        self,
        model: ModelHandle,
        output_spec: OutputSpec,
        user_placeholders: Sequence[UserPlaceholder] = (),
        mode: ExecutionMode = ExecutionMode.PATCH_WISE,
        tile_size: int = 16,
        disable_tiling: bool = False,
        batch_size: int = 0,
        workers: int = 1,
        padding: str = 'edge',
        progress: bool = True
    ):
        """
        Args:
            model: Model handle (see ``modelserve.deployment.ModelHandle``)
            output_spec: Output tensors, spacing scale and field of expression
            user_placeholders: Constant scalars bound on every call
            mode: Patch-wise or fully convolutional execution
            tile_size: Edge of the square output tiles
            disable_tiling: Compute the whole output in one call
            batch_size: Patches per call in patch-wise mode, 0 for a whole tile
            workers: Threads computing tiles
            padding: Border policy, 'edge' or 'constant'
            progress: Show a progress bar
        """
        if not isinstance(model, ModelHandle):
            raise TypeError(f"{type(model).__name__} does not implement the ModelHandle interface")
        if tile_size < 1:
            raise ConfigurationError(f"Must be >= 1, got {tile_size}", key='finetuning.tilesize')
        if batch_size < 0:
            raise ConfigurationError(f"Must be >= 0, got {batch_size}", key='finetuning.batchsize')
        if workers < 1:
            raise ConfigurationError(f"Must be >= 1, got {workers}", key='finetuning.workers')
        if padding not in PADDING_MODES:
            raise ConfigurationError(f"Must be one of {PADDING_MODES}, got {padding!r}", key='finetuning.padding')

        self.model = model
        self.output_spec = output_spec
        self.user_placeholders = tuple(user_placeholders)
        self.mode = mode
        self.tile_size = tile_size
        self.disable_tiling = disable_tiling
        self.batch_size = batch_size
        self.workers = workers
        self.padding = padding
        self.progress = progress

        self.state = PipelineState.DRAFT
        self.bundles: Tuple[SourceBundle, ...] = ()
        self.grid: Optional[OutputGrid] = None
        self.model_filter: Optional[MultisourceModelFilter] = None
        self._manager = SourceBundleManager()
        self._cancel = threading.Event()

    @classmethod
    def from_parameters(cls, params, model: ModelHandle, progress: bool = True) -> 'ModelServePipeline':
        """
        Build a draft pipeline from ``ServeParameters``, opening every source

        Args:
            params: Validated parameters (see ``modelserve.utils.config``)
            model: Loaded model handle
        """
        output_spec = OutputSpec(
            names=tuple(params.output_names),
            spacing_scale=params.spacing_scale,
            foe=(params.foex, params.foey)
        )
        logger.info(f"Output spacing ratio: {output_spec.spacing_scale}")
        logger.info(f"Output field of expression: {params.foex}x{params.foey}")

        pipeline = cls(
            model=model,
            output_spec=output_spec,
            user_placeholders=parse_expressions(params.user_placeholders),
            mode=ExecutionMode.FULLY_CONVOLUTIONAL if params.fully_conv else ExecutionMode.PATCH_WISE,
            tile_size=params.tile_size,
            disable_tiling=params.disable_tiling,
            batch_size=params.batch_size,
            workers=params.workers,
            padding=params.padding,
            progress=progress
        )

        for index, source in enumerate(params.sources, start=1):
            try:
                image_source = RasterImageSource(source.images)
            except FileNotFoundError as e:
                raise ConfigurationError(str(e), key=f"source{index}.il") from e
            pipeline.add_source(image_source, source.fovx, source.fovy, source.placeholder)

        return pipeline

    def _require(self, state: PipelineState, action: str):
        if self.state is not state:
            raise RuntimeError(f"Cannot {action} in state {self.state.value}, expected {state.value}")

    def add_source(self, image_source: Any, patch_width: int, patch_height: int, placeholder: str) -> int:
        """Add a source (DRAFT only); returns its bundle id"""
        self._require(PipelineState.DRAFT, 'add a source')
        return self._manager.add_source(image_source, patch_width, patch_height, placeholder)

    def seal(self) -> Tuple[SourceBundle, ...]:
        """
        Freeze the sources, compute the output grid and pick the execution mode

        Raises:
            ConfigurationError: no source was added
            GeometryError: the sources are not co-registered
        """
        self._require(PipelineState.DRAFT, 'seal')

        # The manager is only sealed once the grid is known, so a failed seal
        # leaves the pipeline in DRAFT
        self._manager.validate()
        pending = self._manager.bundles
        grid = compute_output_grid(
            [bundle.image_source for bundle in pending],
            [bundle.patch_size for bundle in pending],
            self.output_spec.spacing_scale,
            self.output_spec.foe
        )
        bundles = self._manager.seal()

        if self.mode is ExecutionMode.FULLY_CONVOLUTIONAL:
            logger.info("The model is used in fully convolutional mode")

        self.model_filter = MultisourceModelFilter(
            model=self.model,
            bundles=bundles,
            output_spec=self.output_spec,
            grid=grid,
            user_placeholders=self.user_placeholders,
            mode=self.mode,
            batch_size=self.batch_size,
            padding=self.padding
        )
        self.bundles = bundles
        self.grid = grid
        self.state = PipelineState.SEALED
        return bundles

    def cancel(self):
        """Abandon the remaining tiles; in-flight tiles complete first"""
        self._cancel.set()

    def run(self, sink: Any = None) -> Any:
        """
        Compute the whole output raster

        Args:
            sink: Object exposing ``write(region, data)``; an ``ArraySink``
                over the output grid is used when not given

        Returns:
            The sink
        """
        self._require(PipelineState.SEALED, 'run')
        self.state = PipelineState.RUNNING

        if sink is None:
            sink = ArraySink(self.grid.region)

        try:
            self.model_filter.check_model()
            driver = StreamingDriver(
                self.model_filter,
                sink,
                tile_size=self.tile_size,
                disable_tiling=self.disable_tiling,
                workers=self.workers,
                progress=self.progress,
                cancel_event=self._cancel
            )
            driver.run()
        finally:
            self.model.close()
            self.state = PipelineState.FINISHED

        # A cancelled run is incomplete; sinks that can drop their output do so
        if self._cancel.is_set() and hasattr(sink, 'discard'):
            sink.discard()

        return sink
