"""
Evidence from similar users, taste buds and calibration summaries.

These are the functions the chat route and the UI call: they fetch what they need
from a store and hand it to the pure kernel, aggregation and calibration code.
"""

import hashlib
from typing import Optional

from aiocache import cached

from shapebase.config import load_config
from shapebase.corpus import bounding_box
from shapebase.dimensions import Space, TasteVector
from shapebase.logger import logger
from shapebase.ml.aggregate import DEFAULT_MIN_WEIGHT, aggregate
from shapebase.ml.calibration import (DEFAULT_HALF_LIFE, DEFAULT_MIN_SAMPLE,
                                      DEFAULT_TOLERANCE, calibration,
                                      calibration_points, outcome_counts,
                                      prediction_stats)
from shapebase.ml.kernel import DEFAULT_SIGMA, cutoff_radius, match_percent
from shapebase.models import Outcome, TasteBud, WeightedAggregate
from shapebase.utils import store_cache_key, timed


def _evidence_key(func, store, target: TasteVector, **kwargs) -> str:
    rounded = ",".join(f"{value:.1f}" for value in target.as_array())
    params = ",".join(f"{key}={value}" for key, value in sorted(kwargs.items()))
    return store_cache_key(store, func.__name__, target.space.value, rounded, params)


@cached(ttl=load_config().cache_ttl, key_builder=_evidence_key)
@timed
async def fetch_evidence(
    store,
    target: TasteVector,
    *,
    content_id: Optional[int] = None,
    sigma: float = DEFAULT_SIGMA,
    min_weight: float = DEFAULT_MIN_WEIGHT,
    limit: Optional[int] = None,
) -> list[WeightedAggregate]:
    """Aggregated outcomes of users whose snapshots are close to the target."""
    bounds = bounding_box(target, cutoff_radius(sigma, min_weight))
    corpus = await store.fetch_corpus(target.space, content_id=content_id, bounds=bounds)
    contents = await store.get_contents(sorted({record.content_id for record in corpus}))
    aggregates = aggregate(
        target,
        corpus,
        target_content=content_id,
        sigma=sigma,
        min_weight=min_weight,
        limit=limit,
        contents=contents,
    )
    logger.info(
        f"found {len(aggregates)} {target.space.value} evidence items from {len(corpus)} records"
    )
    return aggregates


def format_evidence_line(agg: WeightedAggregate) -> str:
    if agg.content is not None:
        title, content_type = agg.content.title, agg.content.content_type
    else:
        title, content_type = f"content {agg.content_id}", "unknown"
    return (
        f"{title} ({content_type}): {agg.weighted_avg_outcome:.1f} avg from "
        f"{agg.rating_count} similar users (weight: {agg.total_weight:.2f})"
    )


def format_evidence(aggregates: list[WeightedAggregate]) -> list[str]:
    return [format_evidence_line(agg) for agg in aggregates]


def hash_user_id(user_id: int) -> str:
    return hashlib.md5(str(user_id).encode()).hexdigest()


@timed
async def find_taste_buds(
    store, user_id: int, sigma: float = DEFAULT_SIGMA, limit: Optional[int] = None
) -> list[TasteBud]:
    """Other users of the same space ranked by how closely their shape matches."""
    space = await store.get_user_space(user_id)
    target = await store.get_shape(user_id)
    if target is None or target.is_empty:
        return []

    shapes = await store.list_shapes(space)
    profiles = await store.list_profiles(space)
    buds = []
    for other_id, shape in shapes.items():
        if other_id == user_id:
            continue
        profile = profiles.get(other_id)
        buds.append(
            TasteBud(
                user_id_hash=hash_user_id(other_id),
                match_percent=match_percent(target, shape, sigma),
                bud_bio=profile.bud_bio if profile is not None else None,
            )
        )
    buds.sort(key=lambda bud: (-bud.match_percent, bud.user_id_hash))
    logger.info(f"found {len(buds)} taste buds for user {user_id}")
    return buds if limit is None else buds[:limit]


async def summarize_history(
    store,
    user_id: int,
    half_life: float = DEFAULT_HALF_LIFE,
    min_sample: int = DEFAULT_MIN_SAMPLE,
    tolerance: float = DEFAULT_TOLERANCE,
) -> dict:
    space = await store.get_user_space(user_id)
    completed = await store.completed_predictions(user_id)
    report = calibration(
        calibration_points(completed, space),
        half_life=half_life,
        min_sample=min_sample,
        tolerance=tolerance,
    )
    # music outcomes are hit/fence/miss, entertainment hits land within two points
    counts, stats = None, None
    if space == Space.MUSIC:
        counts = outcome_counts(Outcome.from_actual(r.actual) for r in completed)
    else:
        stats = prediction_stats((r.predicted, r.actual) for r in completed)
    return {"calibration": report, "counts": counts, "stats": stats}
