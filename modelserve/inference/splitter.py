"""
Square Tile Splitter

Partitions an output region into square tiles of a fixed edge, cropped at
the right and bottom borders, in row-major order.
"""

from typing import Iterator

from ..geometry import Region


def _tiles_along(length: int, tile_size: int) -> int:
    return -(-length // tile_size)


def number_of_tiles(region: Region, tile_size: int) -> int:
    """Smallest tile count such that no tile exceeds ``tile_size ** 2`` pixels"""
    if tile_size < 1:
        raise ValueError(f"tile_size must be >= 1, got {tile_size}")
    return _tiles_along(region.width, tile_size) * _tiles_along(region.height, tile_size)


def split(region: Region, tile_size: int) -> Iterator[Region]:
    """
    Lazily yield the tiles of ``region``

    Tile corners lie on multiples of ``tile_size`` relative to the region
    origin. Calling this twice with the same arguments yields the same tiles.
    """
    if tile_size < 1:
        raise ValueError(f"tile_size must be >= 1, got {tile_size}")
    for y in range(region.y, region.y_end, tile_size):
        height = min(tile_size, region.y_end - y)
        for x in range(region.x, region.x_end, tile_size):
            yield Region(x, y, min(tile_size, region.x_end - x), height)
