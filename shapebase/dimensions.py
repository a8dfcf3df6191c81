"""
Taste spaces and typed taste vectors.

A taste vector is a point in one space's dimension table. Vectors from
different spaces are never compared.
"""

import math
from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import Mapping, Optional

import numpy as np

from shapebase.errors import CrossSpaceError, MalformedVectorError
from shapebase.logger import logger

MIN_VALUE = 1.0
MAX_VALUE = 10.0
MIDPOINT = 5.0


class Space(str, Enum):
    ENTERTAINMENT = "entertainment"
    MUSIC = "music"

    @property
    def dimensions(self) -> tuple[str, ...]:
        return DIMENSIONS[self]

    @property
    def prediction_scale(self) -> tuple[float, float]:
        return PREDICTION_SCALES[self]


DIMENSIONS = {
    Space.ENTERTAINMENT: (
        "darkness",
        "intellectual_engagement",
        "sentimentality",
        "absurdism",
        "craft_obsession",
        "pandering_tolerance",
        "emotional_directness",
        "vulnerability_appreciation",
        "novelty_seeking",
        "working_class_authenticity",
    ),
    Space.MUSIC: (
        "energy",
        "complexity",
        "lyrical_depth",
        "nostalgia",
        "rawness",
        "emotional_intensity",
        "groove",
        "experimentation",
        "authenticity",
        "atmosphere",
    ),
}

# entertainment predicts 1-10 enjoyment, music predicts a 0-100 hit probability
PREDICTION_SCALES = {
    Space.ENTERTAINMENT: (1.0, 10.0),
    Space.MUSIC: (0.0, 100.0),
}


def _coerce(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise MalformedVectorError(f"dimension {name} has non-numeric value {value!r}")
    value = float(value)
    if not math.isfinite(value):
        raise MalformedVectorError(f"dimension {name} has non-finite value {value}")
    return min(MAX_VALUE, max(MIN_VALUE, value))


@dataclass(frozen=True)
class TasteVector:
    space: Space
    values: tuple[Optional[float], ...]

    def __post_init__(self):
        space = Space(self.space)
        if len(self.values) != len(space.dimensions):
            raise MalformedVectorError(
                f"{space.value} vectors have {len(space.dimensions)} dimensions, "
                f"got {len(self.values)} values"
            )
        values = tuple(
            None if value is None else _coerce(name, value)
            for name, value in zip(space.dimensions, self.values)
        )
        object.__setattr__(self, "space", space)
        object.__setattr__(self, "values", values)

    @classmethod
    def from_mapping(cls, space: Space, mapping: Mapping[str, float]) -> "TasteVector":
        space = Space(space)
        unknown = [key for key in mapping if key not in space.dimensions]
        if unknown:
            logger.debug(f"ignoring unknown {space.value} dimensions: {unknown}")
        return cls(space, tuple(mapping.get(name) for name in space.dimensions))

    @classmethod
    def empty(cls, space: Space) -> "TasteVector":
        space = Space(space)
        return cls(space, (None,) * len(space.dimensions))

    def __getitem__(self, name: str) -> Optional[float]:
        try:
            return self.values[self.space.dimensions.index(name)]
        except ValueError:
            raise KeyError(name) from None

    @property
    def is_empty(self) -> bool:
        return all(value is None for value in self.values)

    def to_dict(self) -> dict[str, float]:
        return {
            name: value
            for name, value in zip(self.space.dimensions, self.values)
            if value is not None
        }

    def updated(self, changes: Mapping[str, Optional[float]]) -> "TasteVector":
        """Return a copy with only the supplied dimensions replaced."""
        merged = self.to_dict()
        merged.update({name: value for name, value in changes.items() if value is not None})
        return TasteVector.from_mapping(self.space, merged)

    def as_array(self) -> np.ndarray:
        return np.array(
            [MIDPOINT if value is None else value for value in self.values], dtype=float
        )


def require_same_space(a: TasteVector, b: TasteVector) -> None:
    if a.space != b.space:
        raise CrossSpaceError(
            f"cannot compare a {a.space.value} vector with a {b.space.value} vector"
        )
