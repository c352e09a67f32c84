import warnings

import numpy as np
import pytest
from rasterio.transform import Affine

from modelserve.data import ArrayImageSource
from modelserve.errors import GeometryError
from modelserve.geometry import AxisMapping, Region, compute_output_grid


def _source(width, height, transform, crs=None):
    return ArrayImageSource(np.zeros((1, height, width), dtype=np.float32), transform=transform, crs=crs)


class TestRegion:

    def test_basic_properties(self):
        region = Region(2, 3, 10, 4)
        assert (region.x_end, region.y_end) == (12, 7)
        assert region.shape == (4, 10)
        assert region.number_of_pixels == 40
        assert not region.is_empty()
        assert Region(0, 0, 0, 5).is_empty()

    def test_contains_and_intersection(self):
        outer = Region(0, 0, 10, 10)
        assert outer.contains(Region(2, 2, 8, 8))
        assert not outer.contains(Region(2, 2, 9, 8))
        assert outer.intersection(Region(-3, 5, 6, 20)) == Region(0, 5, 3, 5)
        assert outer.intersection(Region(10, 0, 2, 2)) is None

    def test_slices_relative_to_enclosing_region(self):
        rows, cols = Region(5, 7, 3, 2).slices(Region(4, 4, 10, 10))
        assert (rows, cols) == (slice(3, 5), slice(1, 4))

    def test_align_to_foe_blocks(self):
        assert Region(5, 3, 6, 4).align(4, 2) == Region(4, 2, 8, 6)
        assert Region(4, 2, 8, 6).align(4, 2) == Region(4, 2, 8, 6)
        assert Region(3, 3, 1, 1).align(1, 1) == Region(3, 3, 1, 1)


class TestAxisMapping:

    def test_window_is_centred_on_the_output_pixel(self):
        axis = AxisMapping(ratio=1.0, fov=16, foe=1)
        assert axis.halo == 15
        assert axis.window_start(0) == -7
        assert axis.window_start(10) == 3

    def test_odd_field_of_view(self):
        axis = AxisMapping(ratio=1.0, fov=5, foe=1)
        assert axis.window_start(10) == 8  # pixels 8..12, centred on 10

    def test_coarser_output(self):
        axis = AxisMapping(ratio=2.0, fov=6, foe=1)
        assert (axis.nominal, axis.halo) == (2, 4)
        assert axis.window_start(3) == 4

    def test_patch_span_of_single_pixel_is_the_patch(self):
        axis = AxisMapping(ratio=1.0, fov=16, foe=1)
        assert axis.patch_span(20, 1) == (13, 16)

    @pytest.mark.parametrize('ratio, fov, foe, start, length', [
        (1.0, 16, 1, 5, 10),
        (1.0, 20, 4, 8, 12),
        (2.0, 6, 1, 3, 5),
        (0.5, 3, 2, 4, 6),
        (4.0, 32, 2, 6, 10),
    ])
    def test_spans_are_reversible_for_integral_scales(self, ratio, fov, foe, start, length):
        axis = AxisMapping(ratio=ratio, fov=fov, foe=foe)
        patch = axis.patch_span(start, length)
        dense = axis.dense_span(start, length)

        assert patch == dense
        assert axis.output_span(*patch) == (start, length)

    def test_dense_span_never_smaller_than_the_field_of_view(self):
        axis = AxisMapping(ratio=1.0, fov=16, foe=4)
        assert axis.dense_span(0, 1)[1] >= 16


class TestOutputGrid:

    reference = Affine(10, 0, 100, 0, -10, 200)

    def test_single_source_keeps_its_grid(self):
        grid = compute_output_grid([_source(60, 40, self.reference)], [(16, 16)], 1.0, (1, 1))
        assert grid.region == Region(0, 0, 60, 40)
        assert grid.transform == self.reference
        assert grid.sources[0].x.ratio == 1.0

    def test_required_region_maps_back_to_the_output(self):
        grid = compute_output_grid([_source(60, 40, self.reference)], [(16, 8)], 1.0, (2, 2))
        geometry = grid.sources[0]
        aligned = Region(4, 6, 10, 8)

        assert geometry.patch_region(aligned) == Region(-3, 3, 24, 14)
        assert geometry.dense_region(aligned) == geometry.patch_region(aligned)
        assert geometry.output_region(geometry.patch_region(aligned)) == aligned

    def test_spacing_scale_and_coarser_source(self):
        sources = [
            _source(60, 40, self.reference, 'EPSG:32631'),
            _source(30, 20, Affine(20, 0, 100, 0, -20, 200), 'EPSG:32631'),
        ]
        grid = compute_output_grid(sources, [(8, 8), (4, 4)], 2.0, (1, 1))

        assert grid.region == Region(0, 0, 30, 20)
        assert grid.transform == Affine(20, 0, 100, 0, -20, 200)
        assert grid.crs == 'EPSG:32631'
        assert (grid.sources[0].x.ratio, grid.sources[1].x.ratio) == (2.0, 1.0)

    def test_smallest_source_bounds_the_output(self):
        sources = [_source(60, 40, self.reference), _source(20, 20, Affine(20, 0, 100, 0, -20, 200))]
        grid = compute_output_grid(sources, [(1, 1), (1, 1)], 1.0, (1, 1))
        assert grid.region == Region(0, 0, 40, 40)

    def test_subpixel_origin_difference_is_tolerated(self):
        sources = [_source(60, 40, self.reference), _source(60, 40, Affine(10, 0, 100.05, 0, -10, 200))]
        compute_output_grid(sources, [(1, 1), (1, 1)], 1.0, (1, 1))

    @pytest.mark.parametrize('transform, crs', [
        (Affine(10, 0, 105, 0, -10, 200), None),
        (Affine(10, 0, 100, 0, 10, 200), None),
        (Affine(10, 1, 100, 0, -10, 200), None),
        (Affine(10, 0, 100, 0, -10, 200), 'EPSG:4326'),
    ], ids=['misaligned', 'flipped', 'rotated', 'crs'])
    def test_inconsistent_sources_are_rejected(self, transform, crs):
        sources = [_source(60, 40, self.reference, 'EPSG:32631'), _source(60, 40, transform, crs)]
        with pytest.raises(GeometryError):
            compute_output_grid(sources, [(1, 1), (1, 1)], 1.0, (1, 1))

    def test_empty_output_is_rejected(self):
        with pytest.raises(GeometryError):
            compute_output_grid([_source(60, 40, self.reference)], [(1, 1)], 100.0, (1, 1))

    def test_no_source(self):
        with pytest.raises(GeometryError):
            compute_output_grid([], [], 1.0, (1, 1))

    def test_coarser_grid_raises_no_warning(self):
        with warnings.catch_warnings():
            warnings.simplefilter('error')
            grid = compute_output_grid([_source(60, 40, self.reference)], [(4, 4)], 2.0, (1, 1))
        assert grid.transform == Affine(20, 0, 100, 0, -20, 200)
