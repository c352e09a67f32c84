"""
Streaming Driver

Pulls tiles from the splitter, computes them with the model filter and hands
them to the output sink in row-major order, one tile at a time or over a
small thread pool.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterator, Optional

from tqdm import tqdm

from ..geometry import Region
from .splitter import number_of_tiles, split

logger = logging.getLogger(__name__)


class StreamingDriver:
    """
    Drives tile computation and output writing

    At most ``2 * workers`` tiles are held in memory at any time. A failed
    tile stops the run and its exception propagates; tiles are never retried.

    Usage:
        >>> driver = StreamingDriver(model_filter, sink, tile_size=256)
        >>> driver.run()
    """

    def __init__(
        self,
        model_filter: Any,
        sink: Any,
        tile_size: int = 16,
        disable_tiling: bool = False,
        workers: int = 1,
        progress: bool = True,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Args:
            model_filter: Object exposing ``output_region`` and ``compute_tile``
            sink: Object exposing ``write(region, data)``
            tile_size: Edge of the square tiles
            disable_tiling: Compute the whole output region in one call
            workers: Number of threads computing tiles
            progress: Show a progress bar
            cancel_event: Event that stops the run between tiles when set
        """
        if tile_size < 1:
            raise ValueError(f"tile_size must be >= 1, got {tile_size}")
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")

        self.model_filter = model_filter
        self.sink = sink
        self.tile_size = tile_size
        self.disable_tiling = disable_tiling
        self.workers = workers
        self.progress = progress
        self._cancel = cancel_event if cancel_event is not None else threading.Event()
        self.tiles_done = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self):
        """Stop after the tiles already in flight; safe to call from any thread"""
        self._cancel.set()

    @property
    def number_of_tiles(self) -> int:
        if self.disable_tiling:
            return 1
        return number_of_tiles(self.model_filter.output_region, self.tile_size)

    def tiles(self) -> Iterator[Region]:
        region = self.model_filter.output_region
        if self.disable_tiling:
            yield region
        else:
            yield from split(region, self.tile_size)

    def run(self) -> int:
        """
        Process every tile

        Returns:
            Number of tiles written to the sink
        """
        total = self.number_of_tiles
        if self.disable_tiling:
            logger.info("Tiling disabled")
        else:
            logger.info(f"Force tiling with squared tiles of {self.tile_size} ({total} tiles)")

        start = time.time()
        pbar = tqdm(total=total, desc='Serving', unit='tile', disable=not self.progress, dynamic_ncols=True)
        try:
            if self.workers == 1:
                self._run_sequential(pbar)
            else:
                self._run_parallel(pbar)
        finally:
            pbar.close()

        elapsed = time.time() - start
        if self.cancelled:
            logger.warning(f"Run cancelled after {self.tiles_done}/{total} tiles")
        else:
            logger.info(f"✓ Processed {self.tiles_done} tiles in {elapsed:.2f}s")
        return self.tiles_done

    def _write(self, region: Region, data, pbar):
        self.sink.write(region, data)
        self.tiles_done += 1
        pbar.update(1)

    def _run_sequential(self, pbar):
        for region in self.tiles():
            if self.cancelled:
                break
            self._write(region, self.model_filter.compute_tile(region), pbar)

    def _run_parallel(self, pbar):
        tiles = self.tiles()
        pending = deque()
        # Leaving the executor waits for running tiles, so nothing is still
        # calling the model when run() returns.
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='modelserve') as executor:
            try:
                while True:
                    while not self.cancelled and len(pending) < 2 * self.workers:
                        region = next(tiles, None)
                        if region is None:
                            break
                        pending.append((region, executor.submit(self.model_filter.compute_tile, region)))

                    if self.cancelled or not pending:
                        break

                    region, future = pending.popleft()
                    self._write(region, future.result(), pbar)
            finally:
                for _, future in pending:
                    future.cancel()
