"""
Utility Module

Configuration loading, merging and validation
"""

from .config import (
    DEFAULTS,
    ServeParameters,
    SourceParameters,
    get_int,
    load_config,
    merge_configs,
    parameters_from_config,
    save_config,
    set_dotted,
    validate_config
)

__all__ = [
    'DEFAULTS',
    'ServeParameters',
    'SourceParameters',
    'get_int',
    'load_config',
    'merge_configs',
    'parameters_from_config',
    'save_config',
    'set_dotted',
    'validate_config'
]
