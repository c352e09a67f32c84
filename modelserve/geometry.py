"""
Region Geometry

Maps output regions to the input regions each source has to provide, and
back. All arithmetic happens per axis on integer pixel indices.

Conventions:
- The output grid shares the upper-left corner of the first source, with a
  pixel size of the first source's pixel size times the spacing scale.
- ``ratio`` is the number of source pixels covered by one output pixel.
- Output regions are processed in blocks of the field of expression (foe),
  anchored at index 0.
- ``halo = fov - round(foe * ratio)`` source pixels surround each block,
  ``floor(halo / 2)`` of them before it.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

from rasterio.transform import Affine

from .errors import GeometryError

logger = logging.getLogger(__name__)

EPS = 1e-9

# Origins of co-registered sources may differ by this fraction of a pixel
ORIGIN_TOLERANCE = 0.01


@dataclass(frozen=True)
class Region:
    """Axis-aligned pixel rectangle, (x, y) is the upper-left index"""
    x: int
    y: int
    width: int
    height: int

    @property
    def x_end(self) -> int:
        return self.x + self.width

    @property
    def y_end(self) -> int:
        return self.y + self.height

    @property
    def shape(self) -> Tuple[int, int]:
        return self.height, self.width

    @property
    def number_of_pixels(self) -> int:
        return self.width * self.height

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def contains(self, other: 'Region') -> bool:
        return (self.x <= other.x and self.y <= other.y
                and other.x_end <= self.x_end and other.y_end <= self.y_end)

    def intersection(self, other: 'Region') -> Optional['Region']:
        x0, y0 = max(self.x, other.x), max(self.y, other.y)
        x1, y1 = min(self.x_end, other.x_end), min(self.y_end, other.y_end)
        if x1 <= x0 or y1 <= y0:
            return None
        return Region(x0, y0, x1 - x0, y1 - y0)

    def slices(self, within: 'Region') -> Tuple[slice, slice]:
        """Row and column slices of this region inside an array covering ``within``"""
        return (slice(self.y - within.y, self.y_end - within.y),
                slice(self.x - within.x, self.x_end - within.x))

    def align(self, foe_x: int, foe_y: int) -> 'Region':
        """Enlarge to the smallest region made of whole foe blocks"""
        x0 = (self.x // foe_x) * foe_x
        y0 = (self.y // foe_y) * foe_y
        x1 = -(-self.x_end // foe_x) * foe_x
        y1 = -(-self.y_end // foe_y) * foe_y
        return Region(x0, y0, x1 - x0, y1 - y0)

    def __str__(self) -> str:
        return f"[x={self.x}, y={self.y}, {self.width}x{self.height}]"


@dataclass(frozen=True)
class AxisMapping:
    """Output-to-input index arithmetic along one axis of one source"""
    ratio: float
    fov: int
    foe: int

    @property
    def nominal(self) -> int:
        """Source pixels spanned by one foe block"""
        return max(1, int(round(self.foe * self.ratio)))

    @property
    def halo(self) -> int:
        return self.fov - self.nominal

    @property
    def halo_low(self) -> int:
        return self.halo // 2

    def scale_floor(self, index: int) -> int:
        return int(math.floor(index * self.ratio + EPS))

    def scale_ceil(self, index: int) -> int:
        return int(math.ceil(index * self.ratio - EPS))

    def window_start(self, block: int) -> int:
        """First source index of the patch feeding foe block ``block``"""
        return self.scale_floor(block * self.foe) - self.halo_low

    def patch_span(self, start: int, length: int) -> Tuple[int, int]:
        """Source span covering the patches of every block of an aligned output span"""
        first = start // self.foe
        last = (start + length - 1) // self.foe
        low = self.window_start(first)
        return low, self.window_start(last) + self.fov - low

    def dense_span(self, start: int, length: int) -> Tuple[int, int]:
        """Source span consumed in one piece by a fully convolutional graph"""
        low = self.scale_floor(start) - self.halo_low
        size = self.scale_ceil(start + length) - self.scale_floor(start) + self.halo
        return low, max(self.fov, size)

    def output_span(self, start: int, size: int) -> Tuple[int, int]:
        """Inverse of the span functions, exact when foe * ratio is integral"""
        out_start = int(round((start + self.halo_low) / self.ratio))
        out_length = int(round((size - self.halo) / self.ratio))
        return out_start, out_length


@dataclass(frozen=True)
class SourceGeometry:
    """Where a source sits relative to the output grid"""
    extent: Region
    x: AxisMapping
    y: AxisMapping

    # Both regions may exceed ``extent``; the border policy fills the rest.

    def patch_region(self, aligned: Region) -> Region:
        """Input region holding every patch window of the blocks of ``aligned``"""
        x0, width = self.x.patch_span(aligned.x, aligned.width)
        y0, height = self.y.patch_span(aligned.y, aligned.height)
        return Region(x0, y0, width, height)

    def dense_region(self, aligned: Region) -> Region:
        """Input region a fully convolutional graph needs to produce ``aligned``"""
        x0, width = self.x.dense_span(aligned.x, aligned.width)
        y0, height = self.y.dense_span(aligned.y, aligned.height)
        return Region(x0, y0, width, height)

    def output_region(self, required: Region) -> Region:
        """Output region whose required input region is ``required``"""
        x0, width = self.x.output_span(required.x, required.width)
        y0, height = self.y.output_span(required.y, required.height)
        return Region(x0, y0, width, height)


@dataclass(frozen=True)
class OutputGrid:
    """Output raster extent and georeferencing, plus every source's mapping"""
    region: Region
    transform: Affine
    crs: Any
    sources: Tuple[SourceGeometry, ...]


def _pixel_size(transform: Affine, index: int) -> Tuple[float, float]:
    if transform.b != 0 or transform.d != 0:
        raise GeometryError(f"Source #{index + 1} has a rotated geotransform, which is not supported")
    if transform.a == 0 or transform.e == 0:
        raise GeometryError(f"Source #{index + 1} has a degenerate geotransform {tuple(transform)[:6]}")
    return transform.a, transform.e


def compute_output_grid(
    sources: Sequence[Any],
    patch_sizes: Sequence[Tuple[int, int]],
    spacing_scale: float,
    foe: Tuple[int, int]
) -> OutputGrid:
    """
    Derive the output grid from co-registered sources

    Args:
        sources: Objects exposing ``width``, ``height``, ``transform``, ``crs``
        patch_sizes: (fovx, fovy) per source
        spacing_scale: Output pixel size relative to the first source
        foe: (foex, foey)

    Returns:
        OutputGrid
    """
    if not sources:
        raise GeometryError("At least one source is required to define the output grid")
    if spacing_scale <= 0:
        raise GeometryError(f"Spacing scale must be positive, got {spacing_scale}")

    reference = sources[0]
    ref_sx, ref_sy = _pixel_size(reference.transform, 0)
    out_sx, out_sy = ref_sx * spacing_scale, ref_sy * spacing_scale

    geometries = []
    out_width, out_height = math.inf, math.inf
    for index, (source, (fovx, fovy)) in enumerate(zip(sources, patch_sizes)):
        sx, sy = _pixel_size(source.transform, index)
        if (sx > 0) != (ref_sx > 0) or (sy > 0) != (ref_sy > 0):
            raise GeometryError(f"Source #{index + 1} is flipped with respect to source #1")
        if reference.crs and source.crs and reference.crs != source.crs:
            raise GeometryError(
                f"Source #{index + 1} CRS {source.crs} differs from source #1 CRS {reference.crs}"
            )

        dx = abs(source.transform.c - reference.transform.c)
        dy = abs(source.transform.f - reference.transform.f)
        if dx > ORIGIN_TOLERANCE * min(abs(sx), abs(ref_sx)) or \
                dy > ORIGIN_TOLERANCE * min(abs(sy), abs(ref_sy)):
            raise GeometryError(
                f"Source #{index + 1} origin ({source.transform.c}, {source.transform.f}) is not "
                f"aligned with source #1 origin ({reference.transform.c}, {reference.transform.f})"
            )

        ratio_x, ratio_y = out_sx / sx, out_sy / sy
        geometries.append(SourceGeometry(
            extent=Region(0, 0, source.width, source.height),
            x=AxisMapping(ratio=ratio_x, fov=fovx, foe=foe[0]),
            y=AxisMapping(ratio=ratio_y, fov=fovy, foe=foe[1]),
        ))
        out_width = min(out_width, source.width / ratio_x)
        out_height = min(out_height, source.height / ratio_y)

    region = Region(0, 0, int(math.floor(out_width + EPS)), int(math.floor(out_height + EPS)))
    if region.is_empty():
        raise GeometryError(
            f"Output grid is empty ({region.width}x{region.height}) with spacing scale {spacing_scale}"
        )

    transform = reference.transform @ Affine.scale(spacing_scale)
    logger.info(f"Output grid: {region.width}x{region.height} pixels, pixel size ({out_sx}, {out_sy})")

    return OutputGrid(region=region, transform=transform, crs=reference.crs, sources=tuple(geometries))
