"""
User Placeholders

Parses "name=value" expressions into constant scalar tensors that are bound
on every inference call of a run.

Supported value syntax:
- true / false           -> bool
- contains '.' or e/E    -> float32
- anything else          -> int32
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple, Union

import numpy as np

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

PLACEHOLDERS_KEY = 'model.userplaceholders'


@dataclass(frozen=True)
class UserPlaceholder:
    """A named scalar tensor, constant across the whole run"""
    name: str
    value: np.ndarray

    def describe(self) -> str:
        return f"{self.name}: dtype={self.value.dtype}, shape={self.value.shape}, value={self.value.item()!r}"


def _coerce_value(text: str) -> np.ndarray:
    lowered = text.lower()
    if lowered in ('true', 'false'):
        return np.array(lowered == 'true', dtype=np.bool_)
    if '.' in text or 'e' in lowered:
        return np.array(float(text), dtype=np.float32)
    return np.array(int(text), dtype=np.int32)


def parse_expression(expression: str) -> UserPlaceholder:
    """
    Parse a single "name=value" expression

    Args:
        expression: e.g. "dropout=0.0"

    Returns:
        UserPlaceholder holding a read-only 0-d array
    """
    name, sep, value = expression.strip().partition('=')
    name, value = name.strip(), value.strip()
    if not sep or not name or not value:
        raise ConfigurationError(
            f"Malformed placeholder expression {expression!r}, expected name=value",
            key=PLACEHOLDERS_KEY
        )

    try:
        tensor = _coerce_value(value)
    except (ValueError, OverflowError) as e:
        raise ConfigurationError(
            f"Cannot infer a bool, int or float from {value!r} in {expression!r}: {e}",
            key=PLACEHOLDERS_KEY
        ) from e

    tensor.setflags(write=False)
    return UserPlaceholder(name=name, value=tensor)


def parse_expressions(expressions: Union[str, Iterable[str], None]) -> Tuple[UserPlaceholder, ...]:
    """
    Parse a list of expressions, or a whitespace separated string of them

    >>> [p.value.item() for p in parse_expressions("is_training=false dropout=0.0")]
    [False, 0.0]
    """
    if expressions is None:
        return ()
    if isinstance(expressions, str):
        expressions = expressions.split()

    placeholders: List[UserPlaceholder] = []
    seen = set()
    for expression in expressions:
        placeholder = parse_expression(expression)
        if placeholder.name in seen:
            raise ConfigurationError(
                f"Placeholder {placeholder.name!r} is given more than once",
                key=PLACEHOLDERS_KEY
            )
        seen.add(placeholder.name)
        placeholders.append(placeholder)
        logger.info(f"Using placeholder {placeholder.describe()}")

    return tuple(placeholders)


def as_feed(placeholders: Iterable[UserPlaceholder]) -> Dict[str, np.ndarray]:
    """Map placeholder names to their tensors"""
    return {p.name: p.value for p in placeholders}
