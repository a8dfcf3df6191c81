import math
import random

import pytest

from shapebase.dimensions import Space, TasteVector
from shapebase.errors import ShapebaseError
from shapebase.ml.aggregate import aggregate, pooled_aggregate, weighted_mean
from shapebase.ml.kernel import similarity
from shapebase.models import ContentItem, PredictionRecord, utcnow

ENT = Space.ENTERTAINMENT


def _vector(space: Space = ENT, **values) -> TasteVector:
    return TasteVector.from_mapping(space, values)


def _record(prediction_id, content_id, snapshot, actual=None, user_id=None):
    return PredictionRecord(
        prediction_id=prediction_id,
        user_id=user_id or prediction_id,
        content_id=content_id,
        space=snapshot.space,
        shape_snapshot=snapshot,
        predicted=5.0 if snapshot.space == ENT else 50.0,
        predicted_at=utcnow(),
        actual=actual,
        completed_at=None if actual is None else utcnow(),
    )


def _random_corpus(n: int, n_contents: int = 5, seed: int = 42) -> list[PredictionRecord]:
    rng = random.Random(seed)
    return [
        _record(
            i,
            rng.randint(1, n_contents),
            TasteVector.from_mapping(ENT, {d: rng.uniform(1, 10) for d in ENT.dimensions}),
            actual=rng.choice([0.0, 5.0, 10.0]),
        )
        for i in range(1, n + 1)
    ]


def test_weighted_mean():
    assert weighted_mean([0, 100], [1, 3]) == 75.0
    assert weighted_mean([4.0], [0.3]) == pytest.approx(4.0)
    assert weighted_mean([], []) is None
    assert weighted_mean([1, 2], [0, 0]) is None
    with pytest.raises(ValueError):
        weighted_mean([1, 2], [1])


def test_empty_corpus_returns_empty():
    assert aggregate(_vector(darkness=8), []) == []
    assert aggregate(_vector(darkness=8), [], target_content=1) == []
    assert pooled_aggregate(_vector(darkness=8), []) is None


def test_close_record_dominates():
    target = _vector(darkness=8, intellectual_engagement=8, sentimentality=2)
    far = _vector(darkness=1, intellectual_engagement=1, sentimentality=3)
    corpus = [_record(1, 7, target, actual=9.0), _record(2, 7, far, actual=1.0)]

    far_weight = math.exp(-99 / 128)
    assert similarity(target, target) == 1.0
    assert similarity(target, far) == pytest.approx(far_weight)

    result = aggregate(target, corpus, target_content=7)
    assert len(result) == 1
    agg = result[0]
    assert agg.content_id == 7
    assert agg.rating_count == 2
    assert agg.total_weight == pytest.approx(1 + far_weight)
    assert agg.weighted_avg_outcome == pytest.approx((9.0 + far_weight * 1.0) / (1 + far_weight))
    assert agg.weighted_avg_outcome > 5.0


def test_min_weight_threshold_is_inclusive_and_strict_below():
    sigma, min_weight = 4.0, 0.5
    target = _vector(darkness=1)
    below = 1 + math.sqrt(-2 * sigma**2 * math.log(0.49))
    above = 1 + math.sqrt(-2 * sigma**2 * math.log(0.51))
    corpus = [
        _record(1, 3, _vector(darkness=below), actual=0.0),
        _record(2, 3, _vector(darkness=above), actual=10.0),
    ]
    (agg,) = aggregate(target, corpus, target_content=3, sigma=sigma, min_weight=min_weight)
    assert agg.rating_count == 1
    assert agg.weighted_avg_outcome == pytest.approx(10.0)
    assert agg.total_weight == pytest.approx(0.51)


def test_rating_count_matches_weights():
    corpus = _random_corpus(200)
    target = TasteVector.from_mapping(ENT, {d: 3.0 for d in ENT.dimensions[:5]})
    sigma, min_weight = 6.0, 0.3

    for agg in aggregate(target, corpus, sigma=sigma, min_weight=min_weight):
        weights = [
            similarity(target, r.shape_snapshot, sigma)
            for r in corpus
            if r.content_id == agg.content_id
        ]
        kept = [w for w in weights if w >= min_weight]
        assert agg.rating_count == len(kept)
        assert agg.total_weight == pytest.approx(sum(kept))
        assert 0.0 <= agg.weighted_avg_outcome <= 10.0


def test_absent_target_content_returns_empty():
    corpus = _random_corpus(20, n_contents=3)
    assert aggregate(_vector(darkness=5), corpus, target_content=99) == []


def test_target_content_item_attached():
    item = ContentItem(content_id=2, title="Severance", content_type="show", space=ENT)
    corpus = [_record(1, 2, _vector(darkness=7), actual=8.0), _record(2, 3, _vector(), actual=1.0)]
    (agg,) = aggregate(_vector(darkness=7), corpus, target_content=item)
    assert agg.content is item
    assert agg.rating_count == 1


def test_pending_records_do_not_count():
    corpus = [_record(1, 1, _vector(darkness=6)), _record(2, 1, _vector(darkness=6), actual=4.0)]
    (agg,) = aggregate(_vector(darkness=6), corpus)
    assert agg.rating_count == 1
    assert agg.weighted_avg_outcome == 4.0


def test_other_space_records_skipped():
    target = _vector(darkness=6)
    corpus = [
        _record(1, 1, TasteVector.empty(Space.MUSIC), actual=10.0),
        _record(2, 1, target, actual=2.0),
    ]
    (agg,) = aggregate(target, corpus)
    assert agg.rating_count == 1
    assert agg.weighted_avg_outcome == 2.0


def test_sorted_by_total_weight_and_truncated():
    target = _vector(darkness=5)
    corpus = [
        _record(1, 1, target, actual=10.0),
        _record(2, 2, target, actual=10.0),
        _record(3, 2, target, actual=0.0),
        _record(4, 3, _vector(darkness=9), actual=5.0),
        _record(5, 3, _vector(darkness=9), actual=5.0),
        _record(6, 3, _vector(darkness=9), actual=5.0),
    ]
    result = aggregate(target, corpus)
    weights = [agg.total_weight for agg in result]
    assert weights == sorted(weights, reverse=True)
    assert [agg.content_id for agg in result] == [3, 2, 1]

    top = aggregate(target, corpus, limit=2)
    assert [agg.content_id for agg in top] == [3, 2]
    assert aggregate(target, corpus, limit=0) == []


def test_limit_ignored_for_single_content():
    corpus = _random_corpus(30, n_contents=1)
    result = aggregate(TasteVector.empty(ENT), corpus, target_content=1, limit=0)
    assert len(result) == 1


def test_contents_mapping_attached():
    item = ContentItem(content_id=1, title="OK Computer", content_type="album", space=Space.MUSIC)
    snapshot = _vector(Space.MUSIC, energy=4)
    (agg,) = aggregate(snapshot, [_record(1, 1, snapshot, actual=10.0)], contents={1: item})
    assert agg.content == item


def test_pooled_aggregate():
    target = _vector(darkness=5)
    corpus = [_record(1, 1, target, actual=10.0), _record(2, 2, target, actual=0.0)]
    pooled = pooled_aggregate(target, corpus)
    assert pooled.content_id is None
    assert pooled.rating_count == 2
    assert pooled.total_weight == pytest.approx(2.0)
    assert pooled.weighted_avg_outcome == pytest.approx(5.0)


def test_non_finite_outcome_rejected():
    target = _vector(darkness=6)
    corpus = [_record(1, 1, target, actual=float("nan"))]
    with pytest.raises(ShapebaseError):
        aggregate(target, corpus)
    with pytest.raises(ShapebaseError):
        pooled_aggregate(target, [_record(2, 1, target, actual=float("inf"))])
