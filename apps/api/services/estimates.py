"""
Scored estimates outside the weekly check-in flow (intake and recalc).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import InvalidPayloadError, RetryableError
from core.logging import log_fields
from models import IntakeSubmission, ScoreHistory
from services.preferences import (
    measurement_prefs_from_answers,
    merge_measurement_prefs,
    smoking_prefs_from_answers,
)
from services.profile_service import ensure_profile
from services.result_snapshot import ResultSnapshot, merge_snapshot, parse_snapshot
from services.scoring import Scorer, ScoreSource

logger = logging.getLogger(__name__)

ESTIMATE_SOURCES = (ScoreSource.INTAKE, ScoreSource.RECALC)


@dataclass(frozen=True)
class EstimateResult:
    source: str
    score: float
    potential: Optional[float]
    model_version: str
    generated_at: datetime


def submit_estimate(
    db: Session,
    *,
    user_id: UUID,
    source: str,
    payload: Mapping[str, Any],
    now: datetime,
    scorer: Scorer,
) -> EstimateResult:
    if source not in ESTIMATE_SOURCES:
        raise InvalidPayloadError(f"source must be one of {', '.join(ESTIMATE_SOURCES)}", field="source")
    if not isinstance(payload, Mapping):
        raise InvalidPayloadError("payload must be an object", field="payload")

    profile = ensure_profile(db, user_id)
    try:
        result = scorer.score(payload, source=source, week_number=profile.current_week_number)
    except ValueError as e:
        raise InvalidPayloadError(str(e), field="payload") from e

    db.add(
        ScoreHistory(
            user_id=user_id,
            source=source,
            week_number=profile.current_week_number,
            score=result.score,
            potential=result.potential,
            model_version=result.model_version,
            generated_at=now,
            payload=dict(payload),
        )
    )

    if source == ScoreSource.INTAKE:
        schema_version = payload.get("schema_version")
        db.add(
            IntakeSubmission(
                user_id=user_id,
                payload=dict(payload),
                schema_version=str(schema_version) if schema_version is not None else None,
                submitted_at=now,
            )
        )
        merged = merge_measurement_prefs(profile.measurement_prefs, measurement_prefs_from_answers(payload))
        if merged is not None:
            profile.measurement_prefs = merged
        smoking = smoking_prefs_from_answers(payload)
        if smoking is not None:
            profile.smoking_prefs = smoking

    incoming = ResultSnapshot(
        score=result.score,
        generated_at=now,
        model_version=result.model_version,
        source=source,
        potential=result.potential,
    )
    profile.last_result = merge_snapshot(parse_snapshot(profile.last_result), incoming).to_json()
    db.add(profile)

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Estimate write failed: {e}",
            extra=log_fields("estimate.write_failed", user_id=user_id, source=source),
        )
        raise RetryableError() from e

    logger.info(
        f"Estimate stored from {source}",
        extra=log_fields("estimate.created", user_id=user_id, source=source, score=result.score),
    )
    return EstimateResult(
        source=source,
        score=result.score,
        potential=result.potential,
        model_version=result.model_version,
        generated_at=now,
    )
