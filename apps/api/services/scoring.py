"""
Score computation seam.

The scoring model itself lives outside the check-in core; the orchestrator
only needs something that maps (payload, source, week) to a score. The
baseline scorer reproduces the production v1 model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol


class ScoreSource:
    INTAKE = "intake"
    WEEKLY_CHECKIN = "weekly_checkin"
    RECALC = "recalc"

    ALL = (INTAKE, WEEKLY_CHECKIN, RECALC)


@dataclass(frozen=True)
class ScoreResult:
    score: float
    potential: Optional[float]
    model_version: str


class Scorer(Protocol):
    def score(self, payload: Mapping[str, Any], *, source: str, week_number: Optional[int]) -> ScoreResult:
        ...


MODEL_VERSION = "v1.0.0"
BASE_SCORE = 550.0
WEEKLY_STEP = 5.0
RECALC_BONUS = 10.0
INTAKE_POTENTIAL = 0.15


class BaselineScorer:
    """v1 model: a fixed baseline shifted by source and cadence week."""

    model_version = MODEL_VERSION

    def score(self, payload: Mapping[str, Any], *, source: str, week_number: Optional[int]) -> ScoreResult:
        if source == ScoreSource.WEEKLY_CHECKIN:
            delta = (week_number or 0) * WEEKLY_STEP
        elif source == ScoreSource.RECALC:
            delta = RECALC_BONUS
        else:
            delta = 0.0

        potential = INTAKE_POTENTIAL if source == ScoreSource.INTAKE else None
        return ScoreResult(score=BASE_SCORE + delta, potential=potential, model_version=self.model_version)
