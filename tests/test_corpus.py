import random
from dataclasses import replace

import pytest

from shapebase.corpus import OutcomeCorpus, bounding_box
from shapebase.dimensions import Space, TasteVector
from shapebase.ml.kernel import cutoff_radius, similarity
from shapebase.models import PredictionRecord, utcnow

ENT = Space.ENTERTAINMENT


def _create_fake_record(prediction_id, content_id=1, user_id=1, space=ENT, actual=None, **values):
    return PredictionRecord(
        prediction_id=prediction_id,
        user_id=user_id,
        content_id=content_id,
        space=space,
        shape_snapshot=TasteVector.from_mapping(space, values),
        predicted=5.0,
        predicted_at=utcnow(),
        actual=actual,
    )


def test_records_indexed_by_space_and_content():
    corpus = OutcomeCorpus(
        [
            _create_fake_record(1, content_id=1, actual=5.0),
            _create_fake_record(2, content_id=2),
            _create_fake_record(3, content_id=1, actual=8.0),
            _create_fake_record(4, content_id=1, space=Space.MUSIC, actual=10.0),
        ]
    )
    assert len(corpus) == 4
    assert 3 in corpus
    assert [r.prediction_id for r in corpus.records(ENT)] == [1, 2, 3]
    assert [r.prediction_id for r in corpus.records(ENT, content_id=1)] == [1, 3]
    assert [r.prediction_id for r in corpus.records(ENT, completed_only=True)] == [1, 3]
    assert [r.prediction_id for r in corpus.records("music")] == [4]
    assert corpus.records(ENT, content_id=42) == []
    assert corpus.content_ids(ENT) == [1, 2]


def test_add_rejects_duplicates_and_mismatched_snapshots():
    corpus = OutcomeCorpus([_create_fake_record(1)])
    with pytest.raises(ValueError):
        corpus.add(_create_fake_record(1))

    record = replace(_create_fake_record(2), shape_snapshot=TasteVector.empty(Space.MUSIC))
    with pytest.raises(ValueError):
        corpus.add(record)


def test_replace_and_remove():
    record = _create_fake_record(1, darkness=3)
    corpus = OutcomeCorpus([record])
    corpus.replace(replace(record, actual=7.0))
    assert corpus.get(1).actual == 7.0

    with pytest.raises(ValueError):
        corpus.replace(replace(record, content_id=9))
    with pytest.raises(KeyError):
        corpus.replace(_create_fake_record(2))

    corpus.remove(1)
    assert len(corpus) == 0
    assert corpus.records(ENT) == []
    assert corpus.for_user(1) == []


def test_for_user():
    corpus = OutcomeCorpus(
        [
            _create_fake_record(1, user_id=1),
            _create_fake_record(2, user_id=2),
            _create_fake_record(3, user_id=1, space=Space.MUSIC),
        ]
    )
    assert [r.prediction_id for r in corpus.for_user(1)] == [1, 3]
    assert [r.prediction_id for r in corpus.for_user(1, space=ENT)] == [1]


def test_bounding_box_keeps_every_close_record():
    rng = random.Random(7)
    sigma, min_weight = 2.0, 0.3
    target = TasteVector.from_mapping(ENT, {d: rng.uniform(1, 10) for d in ENT.dimensions})
    box = bounding_box(target, cutoff_radius(sigma, min_weight))

    records = [
        _create_fake_record(i, **{d: rng.uniform(1, 10) for d in ENT.dimensions[:3]})
        for i in range(1, 300)
    ]
    close = {r.prediction_id for r in records if similarity(target, r.shape_snapshot, sigma) >= min_weight}
    boxed = {r.prediction_id for r in records if box.contains(r.shape_snapshot)}
    assert close <= boxed
    assert box.contains(target)


def test_bounding_box_unbounded():
    assert bounding_box(TasteVector.empty(ENT), cutoff_radius(8.0, 0.0)) is None
