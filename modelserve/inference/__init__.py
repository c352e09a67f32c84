"""
Utilities for streaming inference of a model over large co-registered
rasters.

Output regions are computed tile by tile, so memory is bounded by the tile
size plus the patch halo, never by the image size. Computing the whole output
in one call and computing it tile by tile give identical results.
"""

from .model_filter import (
    FullyConvolutionalExecution,
    MultisourceModelFilter,
    PatchWiseExecution,
    execution_for
)
from .splitter import number_of_tiles, split
from .streaming import StreamingDriver

__all__ = [
    'FullyConvolutionalExecution',
    'MultisourceModelFilter',
    'PatchWiseExecution',
    'StreamingDriver',
    'execution_for',
    'number_of_tiles',
    'split'
]
