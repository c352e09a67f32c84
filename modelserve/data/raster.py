"""
Raster Sources and Sinks

Band-stacked image sources read window by window, and output sinks that
assemble the tiles of the output raster. Reading and writing go through
rasterio; the array variants keep everything in memory.
"""

import logging
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import numpy as np
import rasterio
from rasterio.transform import Affine
from rasterio.windows import Window

from ..errors import ConfigurationError, ExecutionError, GeometryError
from ..geometry import OutputGrid, Region

logger = logging.getLogger(__name__)

PADDING_MODES = ('edge', 'constant')

# GeoTIFF block edge used when the output is large enough to be tiled
BLOCK_SIZE = 256


def _window(region: Region) -> Window:
    return Window(region.x, region.y, region.width, region.height)


class ArrayImageSource:
    """
    In-memory image source

    Usage:
        >>> source = ArrayImageSource(np.zeros((4, 100, 120), dtype=np.float32))
        >>> source.read(Region(10, 10, 16, 16)).shape
        (4, 16, 16)
    """

    def __init__(self, array: np.ndarray, transform: Optional[Affine] = None, crs: Any = None):
        """
        Args:
            array: Pixels, shape [C, H, W] (or [H, W] for a single band)
            transform: Geotransform, identity if not given
            crs: Coordinate reference system, if any
        """
        array = np.asarray(array)
        if array.ndim == 2:
            array = array[np.newaxis]
        if array.ndim != 3:
            raise ValueError(f"Expected a [C, H, W] array, got shape {array.shape}")

        self.array = array
        self.count, self.height, self.width = array.shape
        self.transform = transform if transform is not None else Affine.identity()
        self.crs = crs

    def read(self, region: Region) -> np.ndarray:
        rows, cols = region.slices(Region(0, 0, self.width, self.height))
        return self.array[:, rows, cols].astype(np.float32)

    def __repr__(self) -> str:
        return f"ArrayImageSource({self.count}x{self.height}x{self.width})"


class RasterImageSource:
    """
    Image list read with rasterio and stacked along the band axis

    All images must share size, geotransform and CRS.

    Usage:
        >>> source = RasterImageSource(['spot6_pan.tif', 'spot6_ndvi.tif'])
        >>> patch = source.read(Region(0, 0, 64, 64))  # [C, 64, 64] float32
    """

    def __init__(self, paths: Union[str, Path, Sequence[Union[str, Path]]]):
        if isinstance(paths, (str, Path)):
            paths = [paths]
        self.paths = [Path(p) for p in paths]

        if len(self.paths) == 0:
            raise ConfigurationError("Image list is empty")

        for path in self.paths:
            if not path.exists():
                raise FileNotFoundError(f"Image not found: {path}")

        self.counts = []
        for index, path in enumerate(self.paths):
            with rasterio.open(path) as src:
                if index == 0:
                    self.width, self.height = src.width, src.height
                    self.transform, self.crs = src.transform, src.crs
                elif (src.width, src.height) != (self.width, self.height):
                    raise GeometryError(
                        f"{path} is {src.width}x{src.height}, but {self.paths[0]} "
                        f"is {self.width}x{self.height}"
                    )
                elif not src.transform.almost_equals(self.transform):
                    raise GeometryError(f"{path} is not aligned with {self.paths[0]}")
                elif self.crs and src.crs and src.crs != self.crs:
                    raise GeometryError(f"{path} CRS {src.crs} differs from {self.paths[0]} CRS {self.crs}")
                self.counts.append(src.count)

        self.count = sum(self.counts)
        logger.info(
            f"Opened {len(self.paths)} image(s): {self.width}x{self.height}, {self.count} band(s)"
        )

    def read(self, region: Region) -> np.ndarray:
        window = _window(region)
        stack = []
        for path in self.paths:
            with rasterio.open(path) as src:
                stack.append(src.read(window=window, out_dtype='float32'))
        return np.concatenate(stack, axis=0)

    def __repr__(self) -> str:
        return f"RasterImageSource({[str(p) for p in self.paths]})"


def read_region(source: Any, region: Region, padding: str = 'edge') -> np.ndarray:
    """
    Read a region that may extend past the source bounds

    Only the part inside the source is read. The rest is filled relative to
    the full image bounds, so the same pixel always gets the same value
    whatever region it is read with.

    Args:
        source: Image source exposing ``width``, ``height``, ``count`` and ``read``
        region: Region to read, in source pixels
        padding: 'edge' (replicate border pixels) or 'constant' (zeros)

    Returns:
        float32 array [C, region.height, region.width]
    """
    extent = Region(0, 0, source.width, source.height)
    if extent.contains(region):
        return source.read(region)

    if padding == 'edge':
        rows = np.clip(np.arange(region.y, region.y_end), 0, source.height - 1)
        cols = np.clip(np.arange(region.x, region.x_end), 0, source.width - 1)
        bounds = Region(
            int(cols[0]), int(rows[0]),
            int(cols[-1] - cols[0]) + 1, int(rows[-1] - rows[0]) + 1
        )
        data = source.read(bounds)
        return data[:, rows - bounds.y][:, :, cols - bounds.x]

    if padding == 'constant':
        out = np.zeros((source.count, region.height, region.width), dtype=np.float32)
        inside = region.intersection(extent)
        if inside is not None:
            rows, cols = inside.slices(region)
            out[:, rows, cols] = source.read(inside)
        return out

    raise ConfigurationError(
        f"Unknown padding mode {padding!r}, use one of {PADDING_MODES}",
        key='finetuning.padding'
    )


class _TileSink:
    """Common bookkeeping: fixed region, band count set by the first tile"""

    def __init__(self, region: Region):
        self.region = region
        self.bands: Optional[int] = None
        self.tiles_written = 0

    def _check(self, region: Region, data: np.ndarray):
        if not self.region.contains(region):
            raise ExecutionError(f"Tile {region} is outside the output region {self.region}")
        if data.shape[1:] != region.shape:
            raise ExecutionError(f"Tile {region} got data of shape {data.shape}")
        if self.bands is None:
            self.bands = data.shape[0]
        elif data.shape[0] != self.bands:
            raise ExecutionError(f"Tile {region} has {data.shape[0]} bands, expected {self.bands}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self.discard()

    def close(self):
        pass

    def discard(self):
        """Drop whatever was written; called when the run fails"""
        self.close()


class ArraySink(_TileSink):
    """Assembles the output raster in memory"""

    def __init__(self, region: Region, dtype=np.float32):
        super().__init__(region)
        self.dtype = dtype
        self.array: Optional[np.ndarray] = None

    def write(self, region: Region, data: np.ndarray):
        self._check(region, data)
        if self.array is None:
            self.array = np.zeros((self.bands,) + self.region.shape, dtype=self.dtype)
        rows, cols = region.slices(self.region)
        self.array[:, rows, cols] = data
        self.tiles_written += 1


class RasterSink(_TileSink):
    """
    Writes the output raster as a GeoTIFF, one window per tile

    The dataset is created when the first tile arrives, since the band count
    is only known once the model has produced an output. Tiles go to a
    ``<out>.part`` file which is renamed to ``out`` by ``close``; ``discard``
    (or leaving the ``with`` block on an exception) removes it, so ``out``
    only ever holds a complete raster.
    """

    def __init__(self, path: Union[str, Path], grid: OutputGrid, dtype: str = 'float32', **profile):
        super().__init__(grid.region)
        self.path = Path(path)
        self.partial_path = self.path.with_name(self.path.name + '.part')
        self.profile = {
            'driver': 'GTiff',
            'width': grid.region.width,
            'height': grid.region.height,
            'dtype': dtype,
            'transform': grid.transform,
            'crs': grid.crs,
            'BIGTIFF': 'IF_SAFER',
        }
        if grid.region.width >= BLOCK_SIZE and grid.region.height >= BLOCK_SIZE:
            self.profile.update(tiled=True, blockxsize=BLOCK_SIZE, blockysize=BLOCK_SIZE)
        self.profile.update(profile)
        self._dataset = None

    def write(self, region: Region, data: np.ndarray):
        self._check(region, data)
        if self._dataset is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._dataset = rasterio.open(self.partial_path, 'w', count=self.bands, **self.profile)
            logger.info(f"Writing {self.bands} band(s) to {self.partial_path}")
        self._dataset.write(data.astype(self.profile['dtype'], copy=False), window=_window(region))
        self.tiles_written += 1

    def close(self):
        if self._dataset is not None:
            self._dataset.close()
            self._dataset = None
            self.partial_path.replace(self.path)
            logger.info(f"✓ Output written to {self.path}")

    def discard(self):
        if self._dataset is not None:
            self._dataset.close()
            self._dataset = None
        if self.partial_path.exists():
            self.partial_path.unlink()
            logger.warning(f"Discarded partial output {self.partial_path}")
