"""
Event ledger: durable, append-only record of provider lifecycle events.

The primary key on ``event_id`` is the only thing standing between a
duplicate (or concurrent) delivery and a second processing run, so the insert
is committed before any processing starts. Rows are never deleted.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import RetryableError
from models import LifecycleEvent

logger = logging.getLogger(__name__)


class RecordResult(str, enum.Enum):
    INSERTED = "inserted"
    DUPLICATE_IGNORED = "duplicate_ignored"


class Outcome:
    APPLIED = "applied"
    IGNORED = "ignored"
    UNRESOLVABLE = "unresolvable"
    FAILED = "failed"


def record_event(
    db: Session,
    *,
    event_id: str,
    provider: str,
    event_type: str,
    payload: Any,
    received_at: datetime,
) -> RecordResult:
    """
    Insert the event and commit.

    A uniqueness conflict means the id was already recorded and counts as
    success. Any other storage failure raises RetryableError so the webhook
    answers 5xx and the provider redelivers.
    """
    db.add(
        LifecycleEvent(
            event_id=event_id,
            provider=provider,
            event_type=event_type or "unknown",
            payload=payload,
            received_at=received_at,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            f"Duplicate lifecycle event ignored: {event_id}",
            extra={"extra_fields": {"event": "lifecycle.duplicate", "event_id": event_id, "provider": provider}},
        )
        return RecordResult.DUPLICATE_IGNORED
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Failed to record lifecycle event {event_id}: {e}",
            extra={"extra_fields": {"event": "lifecycle.record_failed", "event_id": event_id, "provider": provider}},
        )
        raise RetryableError("Failed to persist event") from e
    return RecordResult.INSERTED


def get_event(db: Session, event_id: str) -> Optional[LifecycleEvent]:
    return db.query(LifecycleEvent).filter(LifecycleEvent.event_id == event_id).first()


def mark_processed(db: Session, row: LifecycleEvent, *, outcome: str, processed_at: datetime) -> None:
    row.processed_at = processed_at
    row.outcome = outcome
    row.last_error = None
    db.add(row)


def mark_failed(
    db: Session,
    event_id: str,
    *,
    error: str,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> bool:
    """
    Record a failed processing attempt (the attempt itself was rolled back).

    processed_at stays null so the worker retries it, until the row has used
    up ``max_attempts``; it is then closed as failed at ``now``. Returns True
    when the row was closed.
    """
    row = get_event(db, event_id)
    if row is None:
        return False
    row.outcome = Outcome.FAILED
    row.attempts = (row.attempts or 0) + 1
    row.last_error = error[:2000]
    exhausted = max_attempts is not None and now is not None and row.attempts >= max_attempts
    if exhausted:
        row.processed_at = now
    db.add(row)
    db.commit()
    return exhausted


def list_pending(db: Session, *, now: datetime, older_than: timedelta, limit: int) -> List[LifecycleEvent]:
    """
    Events recorded before ``now - older_than`` that never finished processing.

    Fewest attempts first, so rows that keep failing queue behind fresh ones.
    """
    cutoff = now - older_than
    return (
        db.query(LifecycleEvent)
        .filter(LifecycleEvent.processed_at.is_(None), LifecycleEvent.received_at <= cutoff)
        .order_by(LifecycleEvent.attempts.asc(), LifecycleEvent.received_at.asc())
        .limit(limit)
        .all()
    )
