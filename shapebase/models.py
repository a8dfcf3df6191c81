"""
Data models and types.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional

from shapebase.dimensions import Space, TasteVector
from shapebase.errors import PredictionStateError, ShapebaseError

# actual outcomes are reported on a 0-10 scale in both spaces
OUTCOME_SCALE = (0.0, 10.0)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Outcome(str, Enum):
    HIT = "hit"
    FENCE = "fence"
    MISS = "miss"

    @property
    def stored_value(self) -> float:
        return {Outcome.HIT: 10.0, Outcome.FENCE: 5.0, Outcome.MISS: 0.0}[self]

    @property
    def probability(self) -> float:
        return {Outcome.HIT: 100.0, Outcome.FENCE: 50.0, Outcome.MISS: 0.0}[self]

    @classmethod
    def from_actual(cls, actual: float) -> "Outcome":
        if actual >= 8:
            return cls.HIT
        if actual <= 2:
            return cls.MISS
        return cls.FENCE


@dataclass(frozen=True)
class ContentItem:
    content_id: int
    title: str
    content_type: str
    space: Space
    external_id: Optional[str] = None
    external_source: Optional[str] = None
    year: Optional[int] = None
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class PredictionRecord:
    prediction_id: int
    user_id: int
    content_id: int
    space: Space
    shape_snapshot: TasteVector
    predicted: float
    ai_predicted: Optional[float] = None
    mood_before: Optional[str] = None
    predicted_at: Optional[datetime] = None
    actual: Optional[float] = None
    mood_after: Optional[str] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.actual is None

    def completed(
        self,
        actual: float,
        notes: Optional[str] = None,
        mood_after: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> "PredictionRecord":
        if not self.is_pending:
            raise PredictionStateError(
                f"prediction {self.prediction_id} already has an outcome"
            )
        validate_actual(actual)
        return replace(
            self,
            actual=float(actual),
            notes=notes,
            mood_after=mood_after,
            completed_at=completed_at or utcnow(),
        )

    def with_notes(self, notes: str) -> "PredictionRecord":
        if self.notes:
            notes = f"{self.notes}\n{notes}"
        return replace(self, notes=notes)


def validate_prediction(space: Space, predicted: Optional[float]) -> None:
    if predicted is None:
        return
    low, high = space.prediction_scale
    if not low <= predicted <= high:
        raise ShapebaseError(
            f"{space.value} predictions must be between {low:g} and {high:g}, got {predicted}"
        )


def validate_actual(actual: float) -> None:
    low, high = OUTCOME_SCALE
    if not low <= actual <= high:
        raise ShapebaseError(f"outcomes must be between {low:g} and {high:g}, got {actual}")


@dataclass
class WeightedAggregate:
    # None for an aggregate pooled over all content
    content_id: Optional[int]
    weighted_avg_outcome: float
    rating_count: int
    total_weight: float
    content: Optional[ContentItem] = None


@dataclass
class UserProfile:
    user_id: int
    space: Space
    display_name: Optional[str] = None
    current_mood: Optional[str] = None
    mood_updated_at: Optional[datetime] = None
    bud_bio: Optional[str] = None


class TasteBud(NamedTuple):
    user_id_hash: str
    match_percent: float
    bud_bio: Optional[str]


class CalibrationPoint(NamedTuple):
    predicted: float
    actual: float


class CalibrationVerdict(str, Enum):
    INSUFFICIENT_DATA = "insufficient_data"
    WELL_CALIBRATED = "well_calibrated"
    RUNNING_HOT = "running_hot"
    RUNNING_COLD = "running_cold"


@dataclass
class CalibrationReport:
    verdict: CalibrationVerdict
    sample_size: int
    weighted_avg_prediction: Optional[float] = None
    weighted_actual_rate: Optional[float] = None
    flat_avg_prediction: Optional[float] = None
    flat_actual_rate: Optional[float] = None

    @property
    def bias(self) -> Optional[float]:
        if self.weighted_avg_prediction is None or self.weighted_actual_rate is None:
            return None
        return self.weighted_avg_prediction - self.weighted_actual_rate


class OutcomeCounts(NamedTuple):
    total: int
    hits: int
    fences: int
    misses: int

    @property
    def effective_hits(self) -> float:
        return self.hits + 0.5 * self.fences

    @property
    def hit_rate(self) -> Optional[int]:
        if self.total == 0:
            return None
        return round(100 * self.effective_hits / self.total)


class PredictionStats(NamedTuple):
    total: int
    hits: int
    accuracy: Optional[float]
