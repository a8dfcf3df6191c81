"""
Similarity-weighted aggregation of outcomes reported by users with similar tastes.

The aggregator never recommends: it reports what similar tastes observed, ranked
by how much evidence backs each item.
"""

import math
from collections import defaultdict
from typing import Iterable, Mapping, Optional, Sequence, Union

import numpy as np

from shapebase.dimensions import TasteVector
from shapebase.errors import ShapebaseError
from shapebase.logger import logger
from shapebase.ml.kernel import DEFAULT_SIGMA, similarity_weights
from shapebase.models import ContentItem, PredictionRecord, WeightedAggregate
from shapebase.utils import timed

DEFAULT_MIN_WEIGHT = 0.1


def weighted_mean(values: Sequence[float], weights: Sequence[float]) -> Optional[float]:
    values = np.asarray(values, dtype=float)
    weights = np.asarray(weights, dtype=float)
    if values.shape != weights.shape:
        raise ValueError(f"got {values.size} values for {weights.size} weights")
    total = weights.sum()
    if total <= 0:
        return None
    return float(np.dot(weights, values) / total)


def _weighted_records(
    target: TasteVector,
    corpus: Iterable[PredictionRecord],
    content_id: Optional[int],
    sigma: float,
    min_weight: float,
) -> tuple[list[PredictionRecord], np.ndarray]:
    records, other_space = [], 0
    for record in corpus:
        if record.space != target.space or record.shape_snapshot.space != target.space:
            other_space += 1
            continue
        if record.is_pending:
            continue
        if not math.isfinite(record.actual):
            raise ShapebaseError(
                f"prediction {record.prediction_id} has non-finite outcome {record.actual}"
            )
        if content_id is not None and record.content_id != content_id:
            continue
        records.append(record)

    if other_space:
        logger.debug(f"skipped {other_space} records outside the {target.space.value} space")
    if not records:
        return [], np.zeros(0)

    weights = similarity_weights(target, [r.shape_snapshot for r in records], sigma)
    keep = (weights >= min_weight) & (weights > 0)
    return [r for r, kept in zip(records, keep) if kept], weights[keep]


def _build(
    content_id: Optional[int],
    records: list[PredictionRecord],
    weights: np.ndarray,
    content: Optional[ContentItem] = None,
) -> WeightedAggregate:
    outcomes = [r.actual for r in records]
    return WeightedAggregate(
        content_id=content_id,
        weighted_avg_outcome=weighted_mean(outcomes, weights),
        rating_count=len(records),
        total_weight=float(weights.sum()),
        content=content,
    )


@timed
def aggregate(
    target: TasteVector,
    corpus: Iterable[PredictionRecord],
    target_content: Union[ContentItem, int, None] = None,
    sigma: float = DEFAULT_SIGMA,
    min_weight: float = DEFAULT_MIN_WEIGHT,
    limit: Optional[int] = None,
    contents: Optional[Mapping[int, ContentItem]] = None,
) -> list[WeightedAggregate]:
    """
    Weighted mean outcome per content item over records close to the target.

    Only completed records of the target's space count. Without a target content,
    groups are sorted by total weight, descending, and truncated to `limit`.
    An empty list means no evidence.
    """
    if isinstance(target_content, ContentItem):
        content_id = target_content.content_id
    else:
        content_id = target_content

    records, weights = _weighted_records(target, corpus, content_id, sigma, min_weight)
    groups: dict[int, list[int]] = defaultdict(list)
    for i, record in enumerate(records):
        groups[record.content_id].append(i)

    contents = contents or {}
    aggregates = []
    for group_id, idx in groups.items():
        content = contents.get(group_id)
        if isinstance(target_content, ContentItem):
            content = target_content
        aggregates.append(_build(group_id, [records[i] for i in idx], weights[idx], content))

    if content_id is None:
        aggregates.sort(key=lambda agg: (-agg.total_weight, agg.content_id))
        if limit is not None:
            aggregates = aggregates[: max(limit, 0)]
    return aggregates


def pooled_aggregate(
    target: TasteVector,
    corpus: Iterable[PredictionRecord],
    sigma: float = DEFAULT_SIGMA,
    min_weight: float = DEFAULT_MIN_WEIGHT,
) -> Optional[WeightedAggregate]:
    """Single aggregate over every content item, None without evidence."""
    records, weights = _weighted_records(target, corpus, None, sigma, min_weight)
    if not records:
        return None
    return _build(None, records, weights)
