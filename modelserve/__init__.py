"""
modelserve

Multisource, patch-based streaming inference of frozen models over large
co-registered rasters
"""

__version__ = "1.0.0"

from .bundles import ExecutionMode, OutputSpec, SourceBundle, SourceBundleManager
from .errors import ConfigurationError, ExecutionError, GeometryError, LoadError, ModelServeError
from .geometry import Region
from .pipeline import ModelServePipeline, PipelineState
from .placeholders import UserPlaceholder, parse_expression, parse_expressions

__all__ = [
    'ConfigurationError',
    'ExecutionError',
    'ExecutionMode',
    'GeometryError',
    'LoadError',
    'ModelServeError',
    'ModelServePipeline',
    'OutputSpec',
    'PipelineState',
    'Region',
    'SourceBundle',
    'SourceBundleManager',
    'UserPlaceholder',
    'parse_expression',
    'parse_expressions'
]
