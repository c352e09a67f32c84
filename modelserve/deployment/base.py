"""
Model Handle Interface

What the inference filter needs from a loaded graph and its session.
"""

from typing import Dict, Mapping, Protocol, Sequence, runtime_checkable

import numpy as np


@runtime_checkable
class ModelHandle(Protocol):
    """
    A loaded graph plus its execution session

    The handle is owned by one run and must stay open until the last
    ``execute`` call of that run has returned.
    """

    @property
    def input_names(self) -> Sequence[str]:
        ...

    @property
    def output_names(self) -> Sequence[str]:
        ...

    def execute(self, inputs: Mapping[str, np.ndarray], output_names: Sequence[str]) -> Dict[str, np.ndarray]:
        ...

    def close(self) -> None:
        ...
