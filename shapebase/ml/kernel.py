"""
Gaussian similarity kernel over taste vectors.
"""

import math
from typing import Sequence

import numpy as np
from scipy.spatial.distance import cdist

from shapebase.dimensions import TasteVector, require_same_space

DEFAULT_SIGMA = 8.0


def _check_sigma(sigma: float) -> None:
    if not sigma > 0:
        raise ValueError(f"sigma must be positive, got {sigma}")


def squared_distance(a: TasteVector, b: TasteVector) -> float:
    require_same_space(a, b)
    diff = a.as_array() - b.as_array()
    return float(np.dot(diff, diff))


def similarity(a: TasteVector, b: TasteVector, sigma: float = DEFAULT_SIGMA) -> float:
    """
    Weight in (0, 1] expressing how close two tastes are.

    Missing dimensions are read as the midpoint, so two empty vectors match fully.
    """
    _check_sigma(sigma)
    require_same_space(a, b)
    if a.is_empty and b.is_empty:
        return 1.0
    return math.exp(-squared_distance(a, b) / (2 * sigma**2))


def similarity_weights(
    target: TasteVector, snapshots: Sequence[TasteVector], sigma: float = DEFAULT_SIGMA
) -> np.ndarray:
    """Kernel weights of every snapshot against the target, in input order."""
    _check_sigma(sigma)
    if len(snapshots) == 0:
        return np.zeros(0)
    for snapshot in snapshots:
        require_same_space(target, snapshot)
    matrix = np.stack([snapshot.as_array() for snapshot in snapshots], axis=0)
    sq_dists = cdist(target.as_array().reshape(1, -1), matrix, metric="sqeuclidean").ravel()
    return np.exp(-sq_dists / (2 * sigma**2))


def cutoff_radius(sigma: float, min_weight: float) -> float:
    """Distance beyond which the kernel weight drops below min_weight."""
    _check_sigma(sigma)
    if min_weight <= 0:
        return math.inf
    if min_weight >= 1:
        return 0.0
    return sigma * math.sqrt(-2 * math.log(min_weight))


def match_percent(a: TasteVector, b: TasteVector, sigma: float = DEFAULT_SIGMA) -> float:
    return round(100 * similarity(a, b, sigma), 1)
