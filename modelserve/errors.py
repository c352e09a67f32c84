"""
Error Taxonomy

Every failure of a serving run is reported through one of these classes.
None of them is retried: a run either completes or fails with the first error.
"""

from typing import Optional


class ModelServeError(Exception):
    """Base class for all modelserve errors"""


class ConfigurationError(ModelServeError, ValueError):
    """Missing mandatory parameter, invalid bound or malformed expression"""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        if key is not None:
            message = f"[{key}] {message}"
        super().__init__(message)


class LoadError(ModelServeError):
    """Model location missing or graph malformed"""


class GeometryError(ModelServeError):
    """Sources misaligned or no consistent input region mapping"""


class ExecutionError(ModelServeError, RuntimeError):
    """Unknown tensor name or graph execution failure"""

    def __init__(self, message: str, tensor: Optional[str] = None):
        self.tensor = tensor
        super().__init__(message)
