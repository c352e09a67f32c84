"""
Data Module

Band-stacked raster sources, border padding and output sinks
"""

from .raster import (
    ArrayImageSource,
    ArraySink,
    PADDING_MODES,
    RasterImageSource,
    RasterSink,
    read_region
)

__all__ = [
    'ArrayImageSource',
    'ArraySink',
    'PADDING_MODES',
    'RasterImageSource',
    'RasterSink',
    'read_region'
]
