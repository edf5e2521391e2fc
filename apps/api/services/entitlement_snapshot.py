"""
Entitlement read with opportunistic preference backfill.

The read never fails because of the backfill: derived preference fields that
are still empty are filled from the latest intake submission and persisted
best-effort. A failed write is logged and the in-memory values are returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import RetryableError
from core.logging import log_fields
from models import EntitlementStatus, IntakeSubmission, Profile
from services.preferences import (
    measurement_prefs_from_answers,
    normalize_measurement_prefs,
    normalize_smoking_prefs,
    smoking_prefs_from_answers,
)
from services.result_snapshot import parse_snapshot
from services.scheduler import is_week_due

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitlementSnapshot:
    entitlement_status: str
    trial_started_at: Optional[datetime]
    trial_ends_at: Optional[datetime]
    current_week_number: Optional[int]
    next_week_due_at: Optional[datetime]
    is_week_due: bool
    timezone: Optional[str]
    last_result: Optional[Dict[str, Any]]
    measurement_prefs: Optional[Dict[str, str]]
    smoking_prefs: Optional[Dict[str, bool]]
    fetched_at: datetime


def _empty_snapshot(now: datetime) -> EntitlementSnapshot:
    return EntitlementSnapshot(
        entitlement_status=EntitlementStatus.NONE,
        trial_started_at=None,
        trial_ends_at=None,
        current_week_number=None,
        next_week_due_at=None,
        is_week_due=False,
        timezone=None,
        last_result=None,
        measurement_prefs=None,
        smoking_prefs=None,
        fetched_at=now,
    )


def _latest_intake_answers(db: Session, user_id: UUID) -> Optional[Dict[str, Any]]:
    row = (
        db.query(IntakeSubmission)
        .filter(IntakeSubmission.user_id == user_id)
        .order_by(IntakeSubmission.submitted_at.desc())
        .first()
    )
    if row is None or not isinstance(row.payload, dict):
        return None
    return row.payload


def _backfill(db: Session, profile: Profile, measurement, smoking):
    """Fill empty derived prefs from intake; returns the (possibly new) pair and whether anything changed."""
    if measurement is not None and smoking is not None:
        return measurement, smoking, False

    answers = _latest_intake_answers(db, profile.user_id)
    if answers is None:
        return measurement, smoking, False

    changed = False
    if measurement is None:
        derived = measurement_prefs_from_answers(answers)
        if derived:
            measurement, changed = derived, True
    if smoking is None:
        derived = smoking_prefs_from_answers(answers)
        if derived is not None:
            smoking, changed = derived, True
    return measurement, smoking, changed


def get_entitlement_snapshot(db: Session, user_id: UUID, *, now: datetime) -> EntitlementSnapshot:
    try:
        profile = db.query(Profile).filter(Profile.user_id == user_id).first()
    except SQLAlchemyError as e:
        db.rollback()
        raise RetryableError() from e
    if profile is None:
        return _empty_snapshot(now)

    measurement = normalize_measurement_prefs(profile.measurement_prefs)
    smoking = normalize_smoking_prefs(profile.smoking_prefs)
    snapshot = parse_snapshot(profile.last_result)

    result = EntitlementSnapshot(
        entitlement_status=profile.entitlement_status or EntitlementStatus.NONE,
        trial_started_at=profile.trial_started_at,
        trial_ends_at=profile.trial_ends_at,
        current_week_number=profile.current_week_number,
        next_week_due_at=profile.next_week_due_at,
        is_week_due=is_week_due(profile.next_week_due_at, now),
        timezone=profile.timezone,
        last_result=snapshot.to_json() if snapshot is not None else None,
        measurement_prefs=measurement,
        smoking_prefs=smoking,
        fetched_at=now,
    )

    try:
        measurement, smoking, changed = _backfill(db, profile, measurement, smoking)
        if changed:
            profile.measurement_prefs = measurement
            profile.smoking_prefs = smoking
            db.add(profile)
            db.commit()
            logger.info(
                "Backfilled derived preferences from intake",
                extra=log_fields("entitlement.prefs_backfilled", user_id=user_id),
            )
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            f"Preference backfill failed, returning unsaved values: {e}",
            extra=log_fields("entitlement.prefs_backfill_failed", user_id=user_id),
        )

    return replace(result, measurement_prefs=measurement, smoking_prefs=smoking)
