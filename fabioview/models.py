"""Core data types and enumerations for fabioview."""

import dataclasses
import enum

import numpy as np


class SortDirection(enum.Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"


@dataclasses.dataclass
class DecodedFrame:
    """A decoded image as handed back by a decoder."""
    buffer: np.ndarray  # flat float32, row-major
    width: int
    height: int

    def __sizeof__(self) -> int:
        return self.buffer.nbytes
