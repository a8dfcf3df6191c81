"""
Engine configuration read from environment variables.
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    sigma: float = 8.0
    min_weight: float = 0.1
    # single-content lookups accept weaker neighbours
    content_min_weight: float = 0.05
    evidence_limit: int = 15
    taste_buds_limit: int = 20
    half_life: float = 10.0
    min_calibration_sample: int = 10
    calibration_tolerance: float = 10.0
    cache_ttl: int = 300


def load_config() -> EngineConfig:
    env = os.environ
    return EngineConfig(
        sigma=float(env.get("SHAPEBASE_SIGMA") or 8.0),
        min_weight=float(env.get("SHAPEBASE_MIN_WEIGHT") or 0.1),
        content_min_weight=float(env.get("SHAPEBASE_CONTENT_MIN_WEIGHT") or 0.05),
        evidence_limit=int(env.get("SHAPEBASE_EVIDENCE_LIMIT") or 15),
        taste_buds_limit=int(env.get("SHAPEBASE_TASTE_BUDS_LIMIT") or 20),
        half_life=float(env.get("SHAPEBASE_HALF_LIFE") or 10.0),
        min_calibration_sample=int(env.get("SHAPEBASE_MIN_CALIBRATION_SAMPLE") or 10),
        calibration_tolerance=float(env.get("SHAPEBASE_CALIBRATION_TOLERANCE") or 10.0),
        cache_ttl=int(env.get("SHAPEBASE_CACHE_TTL") or 300),
    )
