import math
import random

import numpy as np
import pytest

from shapebase.dimensions import Space, TasteVector
from shapebase.errors import CrossSpaceError
from shapebase.ml.kernel import (cutoff_radius, match_percent, similarity,
                                 similarity_weights, squared_distance)


def _random_vector(space: Space = Space.ENTERTAINMENT, rng=random) -> TasteVector:
    return TasteVector.from_mapping(
        space, {name: rng.uniform(1, 10) for name in space.dimensions}
    )


def test_similarity_identical_is_one():
    for _ in range(20):
        vector = _random_vector()
        for sigma in (0.5, 1.0, 8.0, 100.0):
            assert similarity(vector, vector, sigma) == 1.0


def test_similarity_symmetric():
    for _ in range(20):
        a, b = _random_vector(), _random_vector()
        assert similarity(a, b, 8.0) == similarity(b, a, 8.0)


def test_similarity_decreases_with_distance():
    a = TasteVector.from_mapping(Space.ENTERTAINMENT, {"darkness": 2})
    closer = TasteVector.from_mapping(Space.ENTERTAINMENT, {"darkness": 4})
    farther = TasteVector.from_mapping(Space.ENTERTAINMENT, {"darkness": 9})
    assert squared_distance(a, closer) < squared_distance(a, farther)
    assert similarity(a, closer, 8.0) > similarity(a, farther, 8.0)


def test_similarity_increases_with_sigma():
    a = TasteVector.from_mapping(Space.MUSIC, {"energy": 1, "groove": 9})
    b = TasteVector.from_mapping(Space.MUSIC, {"energy": 7, "groove": 2})
    weights = [similarity(a, b, sigma) for sigma in (1.0, 2.0, 4.0, 8.0, 16.0)]
    assert all(x < y for x, y in zip(weights, weights[1:]))
    assert all(0 < w < 1 for w in weights)


def test_similarity_gaussian_value():
    a = TasteVector.from_mapping(Space.ENTERTAINMENT, {"darkness": 8, "absurdism": 2})
    b = TasteVector.from_mapping(Space.ENTERTAINMENT, {"darkness": 5, "absurdism": 6})
    # distance 5
    assert similarity(a, b, 8.0) == pytest.approx(math.exp(-25 / 128))


def test_missing_dimensions_read_as_midpoint():
    sparse = TasteVector.from_mapping(Space.ENTERTAINMENT, {"darkness": 5})
    empty = TasteVector.empty(Space.ENTERTAINMENT)
    assert similarity(sparse, empty) == 1.0

    dark = TasteVector.from_mapping(Space.ENTERTAINMENT, {"darkness": 8})
    assert similarity(dark, empty, 8.0) == pytest.approx(math.exp(-9 / 128))


def test_empty_vectors_match_fully():
    empty = TasteVector.empty(Space.MUSIC)
    assert similarity(empty, empty, 0.1) == 1.0


def test_cross_space_rejected():
    with pytest.raises(CrossSpaceError):
        similarity(_random_vector(Space.ENTERTAINMENT), _random_vector(Space.MUSIC))


def test_non_positive_sigma_rejected():
    vector = _random_vector()
    with pytest.raises(ValueError):
        similarity(vector, vector, 0)
    with pytest.raises(ValueError):
        similarity(vector, vector, -1.0)


def test_similarity_weights_match_pairwise():
    target = _random_vector()
    snapshots = [_random_vector() for _ in range(50)]
    weights = similarity_weights(target, snapshots, 8.0)
    expected = np.array([similarity(target, s, 8.0) for s in snapshots])
    assert weights.shape == (50,)
    assert np.allclose(weights, expected)


def test_similarity_weights_identical_is_exactly_one():
    target = _random_vector()
    weights = similarity_weights(target, [target, target], 8.0)
    assert list(weights) == [1.0, 1.0]


def test_similarity_weights_empty():
    assert similarity_weights(_random_vector(), [], 8.0).size == 0


def test_cutoff_radius():
    radius = cutoff_radius(8.0, 0.1)
    a = TasteVector.empty(Space.ENTERTAINMENT)
    assert math.exp(-(radius**2) / 128) == pytest.approx(0.1)
    assert cutoff_radius(8.0, 0) == math.inf
    assert cutoff_radius(8.0, 1.0) == 0.0
    assert similarity(a, a) >= 0.1


def test_match_percent():
    a = TasteVector.from_mapping(Space.MUSIC, {"energy": 9})
    b = TasteVector.from_mapping(Space.MUSIC, {"energy": 1})
    assert match_percent(a, a) == 100.0
    assert match_percent(a, b, 8.0) == round(100 * math.exp(-64 / 128), 1)
