"""
Calibration of one user's own predictions.

The same weighted mean as the aggregator, but with temporal weights: the most
recent completed prediction weighs 1 and each older one decays with a half-life
counted in predictions.
"""

from typing import Iterable, Sequence

import numpy as np

from shapebase.dimensions import Space
from shapebase.ml.aggregate import weighted_mean
from shapebase.models import (CalibrationPoint, CalibrationReport,
                              CalibrationVerdict, Outcome, OutcomeCounts,
                              PredictionRecord, PredictionStats)
from shapebase.utils import timed

DEFAULT_HALF_LIFE = 10.0
DEFAULT_MIN_SAMPLE = 10
DEFAULT_TOLERANCE = 10.0


def decay_weights(n: int, half_life: float = DEFAULT_HALF_LIFE) -> np.ndarray:
    """Weights for n points ordered oldest first."""
    if half_life <= 0:
        raise ValueError(f"half-life must be positive, got {half_life}")
    ranks = np.arange(n)[::-1]
    return 0.5 ** (ranks / half_life)


@timed
def calibration(
    history: Sequence[CalibrationPoint],
    half_life: float = DEFAULT_HALF_LIFE,
    min_sample: int = DEFAULT_MIN_SAMPLE,
    tolerance: float = DEFAULT_TOLERANCE,
) -> CalibrationReport:
    """
    Decayed calibration of a completion-ordered history (oldest first).

    Both predictions and outcomes must be on the same 0-100 scale. Fewer than
    `min_sample` points never get a hot/cold label.
    """
    n = len(history)
    if n == 0:
        return CalibrationReport(CalibrationVerdict.INSUFFICIENT_DATA, sample_size=0)

    predicted = [point.predicted for point in history]
    actual = [point.actual for point in history]
    weights = decay_weights(n, half_life)
    report = CalibrationReport(
        verdict=CalibrationVerdict.INSUFFICIENT_DATA,
        sample_size=n,
        weighted_avg_prediction=weighted_mean(predicted, weights),
        weighted_actual_rate=weighted_mean(actual, weights),
        flat_avg_prediction=float(np.mean(predicted)),
        flat_actual_rate=float(np.mean(actual)),
    )
    if n < min_sample:
        return report

    if abs(report.bias) <= tolerance:
        report.verdict = CalibrationVerdict.WELL_CALIBRATED
    elif report.bias > 0:
        report.verdict = CalibrationVerdict.RUNNING_HOT
    else:
        report.verdict = CalibrationVerdict.RUNNING_COLD
    return report


def calibration_points(records: Iterable[PredictionRecord], space: Space) -> list[CalibrationPoint]:
    """Completed records of a space on the 0-100 scale, oldest completion first."""
    space = Space(space)
    completed = [r for r in records if r.space == space and not r.is_pending]
    completed.sort(key=lambda r: (r.completed_at is None, r.completed_at, r.prediction_id))
    if space == Space.MUSIC:
        return [
            CalibrationPoint(r.predicted, Outcome.from_actual(r.actual).probability)
            for r in completed
        ]
    return [CalibrationPoint(10 * r.predicted, 10 * r.actual) for r in completed]


def outcome_counts(outcomes: Iterable[Outcome]) -> OutcomeCounts:
    outcomes = list(outcomes)
    return OutcomeCounts(
        total=len(outcomes),
        hits=sum(o == Outcome.HIT for o in outcomes),
        fences=sum(o == Outcome.FENCE for o in outcomes),
        misses=sum(o == Outcome.MISS for o in outcomes),
    )


def prediction_stats(
    pairs: Iterable[tuple[float, float]], tolerance: float = 2.0
) -> PredictionStats:
    """Accuracy of 1-10 enjoyment predictions: a hit lands within `tolerance` points."""
    pairs = list(pairs)
    if not pairs:
        return PredictionStats(total=0, hits=0, accuracy=None)
    hits = sum(abs(predicted - actual) <= tolerance for predicted, actual in pairs)
    return PredictionStats(total=len(pairs), hits=hits, accuracy=hits / len(pairs))


def should_request_feedback(outcome: Outcome, hit_probability: float) -> bool:
    """Surprising outcomes are worth a note from the user."""
    if outcome == Outcome.HIT:
        return hit_probability < 60
    if outcome == Outcome.MISS:
        return hit_probability > 40
    return False
