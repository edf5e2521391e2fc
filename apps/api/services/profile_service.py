"""
Profile store operations.

Profiles are created on the first profile-touching action (ensure-profile,
trial start, first lifecycle event, first check-in, first estimate). Creation
races are settled by the primary key: the loser rolls back and re-reads the
winner's row.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import ConflictError, InvalidPayloadError, RetryableError, UnresolvableEventError
from core.logging import log_fields
from models import EntitlementStatus, IntakeSubmission, Profile, ScoreHistory, WeeklyCheckin
from services.entitlement_machine import ProfileState, transition
from services.lifecycle_events import EventTarget, Provider, TrialStarted
from services.scheduler import CadencePolicy, is_valid_timezone, normalize_timezone_name

logger = logging.getLogger(__name__)

PAID_STATUSES = (EntitlementStatus.ACTIVE, EntitlementStatus.GRACE, EntitlementStatus.PAST_DUE)


def get_profile(db: Session, user_id: UUID) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.user_id == user_id).first()


def validate_timezone(tz_name: Optional[str]) -> Optional[str]:
    """Normalized IANA name, or None when unset. Unknown names are a payload error."""
    name = normalize_timezone_name(tz_name)
    if name is None:
        return None
    if not is_valid_timezone(name):
        raise InvalidPayloadError(f"Unknown timezone: {name}", field="timezone")
    return name


def apply_updates(profile: Profile, updates: Dict[str, Any]) -> None:
    for key, value in updates.items():
        setattr(profile, key, value)


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to commit {what}: {e}", extra=log_fields("profile.commit_failed", step=what))
        raise RetryableError() from e


def _create_profile(db: Session, user_id: UUID, **fields: Any) -> Profile:
    profile = Profile(user_id=user_id, **fields)
    db.add(profile)
    try:
        _commit(db, "profile create")
    except IntegrityError:
        db.rollback()
        existing = get_profile(db, user_id)
        if existing is None:
            raise RetryableError()
        return existing
    logger.info(f"Profile created for {user_id}", extra=log_fields("profile.created", user_id=user_id))
    return profile


def ensure_profile(db: Session, user_id: UUID, *, timezone_name: Optional[str] = None) -> Profile:
    """
    Idempotent upsert of the user's profile. Commits.

    A supplied timezone replaces the stored one; ``None`` leaves it alone.
    """
    tz = validate_timezone(timezone_name)
    try:
        profile = get_profile(db, user_id)
    except SQLAlchemyError as e:
        db.rollback()
        raise RetryableError() from e

    if profile is None:
        return _create_profile(db, user_id, timezone=tz)

    if tz is not None and profile.timezone != tz:
        profile.timezone = tz
        db.add(profile)
        _commit(db, "profile timezone")
    return profile


def start_trial(
    db: Session,
    user_id: UUID,
    *,
    now: datetime,
    policy: CadencePolicy,
    timezone_name: Optional[str] = None,
) -> Profile:
    """
    Explicit trial start.

    One trial per user: a second call returns the profile unchanged. A user
    with paid access gets a ConflictError. The first due instant is computed
    from ``now`` in the client's timezone (UTC when none was ever given).
    """
    profile = ensure_profile(db, user_id, timezone_name=timezone_name)

    if profile.entitlement_status in PAID_STATUSES:
        raise ConflictError("Already has paid access")
    if profile.trial_started_at is not None:
        logger.info(
            f"Trial already started for {user_id}",
            extra=log_fields("trial.already_started", user_id=user_id),
        )
        return profile

    result = transition(
        ProfileState.from_profile(profile),
        TrialStarted(target=EventTarget(user_id=user_id)),
        now=now,
        policy=policy,
    )
    apply_updates(profile, result.profile_updates())
    db.add(profile)
    try:
        _commit(db, "trial start")
    except IntegrityError as e:
        db.rollback()
        raise RetryableError() from e

    logger.info(
        f"Trial started for {user_id}",
        extra=log_fields(
            "trial.started",
            user_id=user_id,
            trial_ends_at=profile.trial_ends_at,
            next_week_due_at=profile.next_week_due_at,
        ),
    )
    return profile


def delete_profile(db: Session, user_id: UUID) -> bool:
    """
    Account deletion: the only hard delete. Ledger rows are kept.

    Returns False when there was no profile.
    """
    profile = get_profile(db, user_id)
    if profile is None:
        return False

    db.query(ScoreHistory).filter(ScoreHistory.user_id == user_id).delete(synchronize_session=False)
    db.query(WeeklyCheckin).filter(WeeklyCheckin.user_id == user_id).delete(synchronize_session=False)
    db.query(IntakeSubmission).filter(IntakeSubmission.user_id == user_id).delete(synchronize_session=False)
    db.delete(profile)
    _commit(db, "profile delete")

    logger.info(f"Profile deleted for {user_id}", extra=log_fields("profile.deleted", user_id=user_id))
    return True


def resolve_profile_for_event(
    db: Session,
    provider: str,
    target: EventTarget,
    *,
    now: datetime,
    policy: CadencePolicy,
) -> Profile:
    """
    Find (or create) the profile a lifecycle event applies to.

    Our user id wins; a missing profile is created with a trial window
    starting now. Otherwise the provider's customer id must match a stored
    reference. Raises UnresolvableEventError when neither works.
    """
    if target.user_id is not None:
        profile = get_profile(db, target.user_id)
        if profile is not None:
            return profile
        return _create_profile(
            db,
            target.user_id,
            trial_started_at=now,
            trial_ends_at=now + policy.trial_duration,
        )

    if target.customer_id:
        query = db.query(Profile)
        if provider == Provider.STRIPE:
            query = query.filter(Profile.stripe_customer_id == target.customer_id)
        else:
            query = query.filter(Profile.rc_customer_id == target.customer_id)
        profile = query.first()
        if profile is not None:
            return profile
        raise UnresolvableEventError(f"no profile for {provider} customer {target.customer_id}")

    raise UnresolvableEventError("event carries no user or customer reference")
