"""
In-memory outcome corpus indexed by space, content and user.
"""

import math
from collections import defaultdict
from typing import Iterable, Iterator, NamedTuple, Optional

import numpy as np

from shapebase.dimensions import Space, TasteVector
from shapebase.models import PredictionRecord


class Bounds(NamedTuple):
    """Per-dimension bounding box over snapshot values (midpoint-filled)."""

    low: tuple[float, ...]
    high: tuple[float, ...]

    def contains(self, vector: TasteVector) -> bool:
        values = vector.as_array()
        return bool(np.all(values >= np.array(self.low)) and np.all(values <= np.array(self.high)))


def bounding_box(target: TasteVector, radius: float) -> Optional[Bounds]:
    """
    Box holding every vector within `radius` of the target.

    Any vector outside it is farther than `radius`, so filtering on it never drops
    a record the kernel would keep.
    """
    if math.isinf(radius):
        return None
    center = target.as_array()
    return Bounds(tuple(center - radius), tuple(center + radius))


class OutcomeCorpus:
    def __init__(self, records: Iterable[PredictionRecord] = ()):
        self._records: dict[int, PredictionRecord] = {}
        self._by_content: dict[Space, dict[int, set[int]]] = defaultdict(lambda: defaultdict(set))
        self._by_user: dict[int, set[int]] = defaultdict(set)
        for record in records:
            self.add(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[PredictionRecord]:
        return iter(self._records[idx] for idx in sorted(self._records))

    def __contains__(self, prediction_id: int) -> bool:
        return prediction_id in self._records

    def get(self, prediction_id: int) -> Optional[PredictionRecord]:
        return self._records.get(prediction_id)

    def add(self, record: PredictionRecord) -> None:
        if record.prediction_id in self._records:
            raise ValueError(f"prediction {record.prediction_id} is already in the corpus")
        if record.shape_snapshot.space != record.space:
            raise ValueError(
                f"prediction {record.prediction_id} has a {record.shape_snapshot.space.value} "
                f"snapshot in the {record.space.value} space"
            )
        self._records[record.prediction_id] = record
        self._by_content[record.space][record.content_id].add(record.prediction_id)
        self._by_user[record.user_id].add(record.prediction_id)

    def replace(self, record: PredictionRecord) -> None:
        current = self._records.get(record.prediction_id)
        if current is None:
            raise KeyError(record.prediction_id)
        if (current.space, current.content_id, current.user_id) != (
            record.space,
            record.content_id,
            record.user_id,
        ):
            raise ValueError(f"prediction {record.prediction_id} cannot change owner or content")
        self._records[record.prediction_id] = record

    def remove(self, prediction_id: int) -> PredictionRecord:
        record = self._records.pop(prediction_id)
        self._by_content[record.space][record.content_id].discard(prediction_id)
        self._by_user[record.user_id].discard(prediction_id)
        return record

    def content_ids(self, space: Space) -> list[int]:
        return sorted(idx for idx, preds in self._by_content[Space(space)].items() if preds)

    def records(
        self,
        space: Space,
        content_id: Optional[int] = None,
        bounds: Optional[Bounds] = None,
        completed_only: bool = False,
    ) -> list[PredictionRecord]:
        by_content = self._by_content[Space(space)]
        if content_id is not None:
            ids = by_content.get(content_id, set())
        else:
            ids = set().union(*by_content.values()) if by_content else set()

        out = []
        for idx in sorted(ids):
            record = self._records[idx]
            if completed_only and record.is_pending:
                continue
            if bounds is not None and not bounds.contains(record.shape_snapshot):
                continue
            out.append(record)
        return out

    def for_user(self, user_id: int, space: Optional[Space] = None) -> list[PredictionRecord]:
        records = [self._records[idx] for idx in sorted(self._by_user.get(user_id, ()))]
        if space is not None:
            records = [r for r in records if r.space == Space(space)]
        return records
