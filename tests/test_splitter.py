import pytest

from modelserve.geometry import Region
from modelserve.inference.splitter import number_of_tiles, split


def test_tiles_cover_region_in_row_major_order():
    region = Region(0, 0, 10, 7)
    tiles = list(split(region, 4))

    assert [(t.x, t.y) for t in tiles] == [(0, 0), (4, 0), (8, 0), (0, 4), (4, 4), (8, 4)]
    assert sum(t.number_of_pixels for t in tiles) == region.number_of_pixels
    assert len(tiles) == number_of_tiles(region, 4)


def test_border_tiles_are_cropped():
    tiles = list(split(Region(0, 0, 10, 7), 4))
    assert tiles[2] == Region(8, 0, 2, 4)
    assert tiles[-1] == Region(8, 4, 2, 3)
    assert all(t.width <= 4 and t.height <= 4 for t in tiles)


def test_tiles_do_not_overlap():
    region = Region(3, 5, 23, 17)
    seen = set()
    for tile in split(region, 5):
        assert region.contains(tile)
        pixels = {(x, y) for x in range(tile.x, tile.x_end) for y in range(tile.y, tile.y_end)}
        assert not pixels & seen
        seen |= pixels
    assert len(seen) == region.number_of_pixels


def test_tile_larger_than_region_gives_one_tile():
    region = Region(0, 0, 300, 200)
    assert list(split(region, 512)) == [region]
    assert number_of_tiles(region, 512) == 1


def test_split_is_restartable():
    region = Region(0, 0, 33, 21)
    assert list(split(region, 8)) == list(split(region, 8))


def test_single_pixel_tiles():
    region = Region(0, 0, 3, 2)
    assert number_of_tiles(region, 1) == 6
    assert all(t.number_of_pixels == 1 for t in split(region, 1))


@pytest.mark.parametrize('tile_size', [0, -4])
def test_invalid_tile_size(tile_size):
    with pytest.raises(ValueError):
        number_of_tiles(Region(0, 0, 10, 10), tile_size)
    with pytest.raises(ValueError):
        list(split(Region(0, 0, 10, 10), tile_size))
