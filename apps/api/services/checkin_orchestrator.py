"""
Weekly check-in completion.

A submission is either a first completion (score it, advance the cadence) or
a replay of a check-in id that already has a score. The two are told apart by
the score history row tagged with the check-in id; concurrent first
completions are settled by the (user_id, week_number) uniqueness on
``weekly_checkins``: the loser rolls back and replays the winner's row.

The check-in row, its score history row and the profile's cadence fields are
written in one transaction. A replay recomputes everything it writes from
stored values, so it also completes a profile update that never landed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import InvalidPayloadError, RetryableError, UnauthorizedError
from core.logging import log_fields
from models import Profile, ScoreHistory, WeeklyCheckin
from services.profile_service import ensure_profile
from services.result_snapshot import ResultSnapshot, merge_snapshot, parse_snapshot
from services.scheduler import CadencePolicy
from services.scoring import Scorer, ScoreSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckinCompletion:
    score: float
    potential: Optional[float]
    model_version: str
    generated_at: datetime
    next_due_at: datetime
    reused: bool
    current_week_number: int


def _validate(
    *,
    week_number: Any,
    payload: Any,
    completed_at: datetime,
    now: datetime,
    policy: CadencePolicy,
) -> None:
    if not isinstance(payload, Mapping):
        raise InvalidPayloadError("payload must be an object", field="payload")
    if isinstance(week_number, bool) or not isinstance(week_number, int):
        raise InvalidPayloadError("week_number must be an integer", field="week_number")
    if not 1 <= week_number <= policy.week_cap:
        raise InvalidPayloadError(f"week_number must be between 1 and {policy.week_cap}", field="week_number")
    if completed_at.tzinfo is None:
        raise InvalidPayloadError("completed_at must include a UTC offset", field="completed_at")
    if completed_at > now + policy.clock_skew_tolerance:
        raise InvalidPayloadError("completed_at is in the future", field="completed_at")


def _history_for_checkin(db: Session, checkin_id: UUID) -> Optional[ScoreHistory]:
    return db.query(ScoreHistory).filter(ScoreHistory.related_checkin_id == checkin_id).first()


def _checkin_for_week(db: Session, user_id: UUID, week_number: int) -> Optional[WeeklyCheckin]:
    return (
        db.query(WeeklyCheckin)
        .filter(WeeklyCheckin.user_id == user_id, WeeklyCheckin.week_number == week_number)
        .first()
    )


def _due_for(checkin: WeeklyCheckin, profile: Profile, policy: CadencePolicy) -> datetime:
    """
    Next due instant from the check-in's submission instant.

    Never earlier than the moment the check-in was first recorded; a late
    (offline) submission makes the next week due immediately instead of in
    the past.
    """
    due = policy.next_due(checkin.submitted_at, profile.timezone)
    floor = checkin.created_at
    if floor is not None and due < floor:
        return floor
    return due


def _advance_cadence(profile: Profile, checkin: WeeklyCheckin, next_due: datetime, policy: CadencePolicy) -> None:
    """Move the profile to the week after ``checkin``; never backwards, never past the cap."""
    target_week = policy.advance_week(checkin.week_number)
    current = profile.current_week_number or 0
    if target_week < current:
        return
    if (
        target_week == current
        and profile.next_week_due_at is not None
        and profile.next_week_due_at > next_due
    ):
        return
    profile.current_week_number = target_week
    profile.next_week_due_at = next_due


def _refresh_last_result(profile: Profile, history: ScoreHistory) -> None:
    incoming = ResultSnapshot(
        score=history.score,
        generated_at=history.generated_at,
        model_version=history.model_version,
        source=history.source,
        potential=history.potential,
    )
    existing = parse_snapshot(profile.last_result)
    if existing is not None and existing.generated_at > incoming.generated_at:
        return
    profile.last_result = merge_snapshot(existing, incoming).to_json()


def _completion(history: ScoreHistory, profile: Profile, next_due: datetime, *, reused: bool) -> CheckinCompletion:
    return CheckinCompletion(
        score=history.score,
        potential=history.potential,
        model_version=history.model_version,
        generated_at=history.generated_at,
        next_due_at=next_due,
        reused=reused,
        current_week_number=profile.current_week_number,
    )


def _commit(db: Session, user_id: UUID, step: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Check-in write failed at {step}: {e}",
            extra=log_fields("estimate.write_failed", user_id=user_id, step=step),
        )
        raise RetryableError() from e


def _replay(
    db: Session,
    profile: Profile,
    history: ScoreHistory,
    *,
    user_id: UUID,
    policy: CadencePolicy,
) -> CheckinCompletion:
    if history.user_id != user_id:
        raise UnauthorizedError("Check-in belongs to another user")

    checkin = db.get(WeeklyCheckin, history.related_checkin_id)
    if checkin is None:
        raise RetryableError("Check-in record missing for scored submission")

    next_due = _due_for(checkin, profile, policy)
    checkin.due_at = next_due
    _advance_cadence(profile, checkin, next_due, policy)
    _refresh_last_result(profile, history)
    db.add_all([checkin, profile])
    _commit(db, user_id, "replay")

    logger.info(
        f"Check-in {checkin.checkin_id} replayed, reusing existing score",
        extra=log_fields(
            "estimate.reused",
            user_id=user_id,
            checkin_id=str(checkin.checkin_id),
            week_number=checkin.week_number,
            next_week_due_at=next_due,
        ),
    )
    return _completion(history, profile, next_due, reused=True)


def _first_completion(
    db: Session,
    profile: Profile,
    checkin: WeeklyCheckin,
    *,
    user_id: UUID,
    scorer: Scorer,
    policy: CadencePolicy,
) -> CheckinCompletion:
    try:
        result = scorer.score(checkin.payload, source=ScoreSource.WEEKLY_CHECKIN, week_number=checkin.week_number)
    except ValueError as e:
        db.rollback()
        raise InvalidPayloadError(str(e), field="payload") from e

    history = ScoreHistory(
        user_id=user_id,
        source=ScoreSource.WEEKLY_CHECKIN,
        related_checkin_id=checkin.checkin_id,
        week_number=checkin.week_number,
        score=result.score,
        potential=result.potential,
        model_version=result.model_version,
        generated_at=checkin.submitted_at,
        payload=dict(checkin.payload or {}),
    )
    next_due = _due_for(checkin, profile, policy)
    checkin.due_at = next_due
    _advance_cadence(profile, checkin, next_due, policy)
    _refresh_last_result(profile, history)
    db.add_all([checkin, history, profile])
    _commit(db, user_id, "first_completion")

    logger.info(
        f"Check-in {checkin.checkin_id} scored for week {checkin.week_number}",
        extra=log_fields(
            "estimate.created",
            user_id=user_id,
            checkin_id=str(checkin.checkin_id),
            week_number=checkin.week_number,
            score=result.score,
            next_week_due_at=next_due,
        ),
    )
    return _completion(history, profile, next_due, reused=False)


def complete_checkin(
    db: Session,
    *,
    user_id: UUID,
    checkin_id: UUID,
    week_number: int,
    payload: Mapping[str, Any],
    completed_at: datetime,
    now: datetime,
    scorer: Scorer,
    policy: CadencePolicy,
) -> CheckinCompletion:
    """
    Complete (or replay) a weekly check-in.

    Raises UnauthorizedError when the check-in id belongs to someone else,
    InvalidPayloadError for a malformed submission and RetryableError when
    the store fails. Any number of retries of the same ``checkin_id`` return
    the same score and advance the cadence once.
    """
    _validate(week_number=week_number, payload=payload, completed_at=completed_at, now=now, policy=policy)
    profile = ensure_profile(db, user_id)

    try:
        history = _history_for_checkin(db, checkin_id)
        if history is not None:
            return _replay(db, profile, history, user_id=user_id, policy=policy)

        checkin = db.get(WeeklyCheckin, checkin_id)
        if checkin is not None and checkin.user_id != user_id:
            raise UnauthorizedError("Check-in belongs to another user")
        if checkin is None:
            checkin = WeeklyCheckin(
                checkin_id=checkin_id,
                user_id=user_id,
                week_number=week_number,
                submitted_at=completed_at,
                payload=dict(payload),
                created_at=now,
            )
        return _first_completion(db, profile, checkin, user_id=user_id, scorer=scorer, policy=policy)
    except IntegrityError:
        db.rollback()
        logger.info(
            f"Check-in {checkin_id} lost a completion race, replaying winner",
            extra=log_fields("estimate.conflict", user_id=user_id, checkin_id=str(checkin_id), week_number=week_number),
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Check-in {checkin_id} read failed: {e}",
            extra=log_fields("estimate.read_failed", user_id=user_id, checkin_id=str(checkin_id)),
        )
        raise RetryableError() from e

    return _resolve_conflict(
        db,
        user_id=user_id,
        checkin_id=checkin_id,
        week_number=week_number,
        scorer=scorer,
        policy=policy,
    )


def _resolve_conflict(
    db: Session,
    *,
    user_id: UUID,
    checkin_id: UUID,
    week_number: int,
    scorer: Scorer,
    policy: CadencePolicy,
) -> CheckinCompletion:
    """
    After a uniqueness conflict: the same check-in id was completed
    concurrently, or this week already has a check-in under another id. Either
    way the existing row's result is returned.
    """
    try:
        profile = ensure_profile(db, user_id)
        history = _history_for_checkin(db, checkin_id)
        if history is None:
            existing = db.get(WeeklyCheckin, checkin_id) or _checkin_for_week(db, user_id, week_number)
            if existing is None:
                raise RetryableError("Check-in conflict could not be resolved")
            if existing.user_id != user_id:
                raise UnauthorizedError("Check-in belongs to another user")
            history = _history_for_checkin(db, existing.checkin_id)
            if history is None:
                return _first_completion(db, profile, existing, user_id=user_id, scorer=scorer, policy=policy)
        return _replay(db, profile, history, user_id=user_id, policy=policy)
    except IntegrityError as e:
        db.rollback()
        raise RetryableError("Check-in conflict could not be resolved") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Check-in {checkin_id} conflict resolution failed: {e}",
            extra=log_fields("estimate.read_failed", user_id=user_id, checkin_id=str(checkin_id)),
        )
        raise RetryableError() from e
