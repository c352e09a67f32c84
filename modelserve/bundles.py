"""
Source Bundles

Per-source configuration (image source, patch size, placeholder name) and the
output tensors specification. Both are frozen before the first tile.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class ExecutionMode(enum.Enum):
    PATCH_WISE = 'patchwise'
    FULLY_CONVOLUTIONAL = 'fullyconv'


@dataclass(frozen=True)
class SourceBundle:
    """
    One input source of the model

    Attributes:
        image_source: Band-stacked image source (see ``modelserve.data``)
        patch_size: (width, height) of the patch, in source pixels
        placeholder: Name of the model input tensor fed by this source
    """
    image_source: Any
    patch_size: Tuple[int, int]
    placeholder: str


@dataclass(frozen=True)
class OutputSpec:
    """
    Output tensors to stack, in band order

    Attributes:
        names: Output tensor names; their order fixes the output band order
        spacing_scale: Output pixel size relative to the first source
        foe: (foex, foey) output block produced by one patch
    """
    names: Tuple[str, ...]
    spacing_scale: float = 1.0
    foe: Tuple[int, int] = (1, 1)

    def __post_init__(self):
        if not self.names:
            raise ConfigurationError("At least one output tensor name is required", key='output.names')
        if len(set(self.names)) != len(self.names):
            raise ConfigurationError(f"Output tensor names are not unique: {list(self.names)}", key='output.names')
        if not self.spacing_scale > 0:
            raise ConfigurationError(f"Must be > 0, got {self.spacing_scale}", key='output.spcscale')
        for key, value in zip(('output.foex', 'output.foey'), self.foe):
            if value < 1:
                raise ConfigurationError(f"Must be >= 1, got {value}", key=key)


class SourceBundleManager:
    """
    Accumulates source bundles, then freezes them

    Usage:
        >>> manager = SourceBundleManager()
        >>> manager.add_source(source, 16, 16, 'x1')
        0
        >>> bundles = manager.seal()
    """

    def __init__(self):
        self._bundles: List[SourceBundle] = []
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __len__(self) -> int:
        return len(self._bundles)

    def add_source(self, image_source: Any, patch_width: int, patch_height: int, placeholder: str) -> int:
        """
        Register a source

        Returns:
            Bundle id (position of the source, starting at 0)
        """
        if self._sealed:
            raise RuntimeError("Cannot add a source after the bundles have been sealed")

        key = f"source{len(self._bundles) + 1}"
        if patch_width < 1:
            raise ConfigurationError(f"Must be >= 1, got {patch_width}", key=f"{key}.fovx")
        if patch_height < 1:
            raise ConfigurationError(f"Must be >= 1, got {patch_height}", key=f"{key}.fovy")
        if not placeholder or not placeholder.strip():
            raise ConfigurationError("Placeholder name must not be empty", key=f"{key}.placeholder")
        if placeholder in self.placeholders():
            raise ConfigurationError(
                f"Placeholder {placeholder!r} is already bound to another source",
                key=f"{key}.placeholder"
            )

        bundle = SourceBundle(
            image_source=image_source,
            patch_size=(int(patch_width), int(patch_height)),
            placeholder=placeholder
        )
        self._bundles.append(bundle)

        logger.info(f"Source #{len(self._bundles)} info:")
        logger.info(f"  Field of view : {bundle.patch_size[0]}x{bundle.patch_size[1]}")
        logger.info(f"  Placeholder   : {bundle.placeholder}")

        return len(self._bundles) - 1

    def placeholders(self) -> Sequence[str]:
        return [bundle.placeholder for bundle in self._bundles]

    @property
    def bundles(self) -> Tuple[SourceBundle, ...]:
        """Bundles added so far, sealed or not"""
        return tuple(self._bundles)

    def validate(self):
        if not self._bundles:
            raise ConfigurationError("At least one source is required", key='source1.il')

    def seal(self) -> Tuple[SourceBundle, ...]:
        """Freeze the bundle list; no source can be added afterwards"""
        self.validate()
        self._sealed = True
        return tuple(self._bundles)
