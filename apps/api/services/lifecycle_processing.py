"""
Lifecycle event processing: ledger record, then state-machine application.

Webhook handlers call ``ingest_lifecycle_event``. Once the ledger insert has
committed the delivery is acknowledged no matter what happens next; a
processing failure is logged and left on the ledger row (``processed_at``
null) for ``reprocess_pending_events`` to pick up.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import UnresolvableEventError
from core.logging import log_fields
from services.entitlement_machine import ProfileState, transition
from services.event_ledger import (
    Outcome,
    RecordResult,
    get_event,
    list_pending,
    mark_failed,
    mark_processed,
    record_event,
)
from services.lifecycle_events import MalformedEventError, ParsedDelivery, UnknownEvent, parse_delivery
from services.profile_service import apply_updates, resolve_profile_for_event
from services.scheduler import CadencePolicy

logger = logging.getLogger(__name__)


def ingest_lifecycle_event(
    db: Session,
    *,
    provider: str,
    delivery: ParsedDelivery,
    payload: Any,
    now: datetime,
    policy: CadencePolicy,
) -> Dict[str, Any]:
    """
    Record a verified delivery and apply it.

    Raises RetryableError only when the ledger insert itself fails; every
    other outcome is returned so the handler can acknowledge.
    """
    recorded = record_event(
        db,
        event_id=delivery.event_id,
        provider=provider,
        event_type=delivery.event_type,
        payload=payload,
        received_at=now,
    )
    if recorded == RecordResult.DUPLICATE_IGNORED:
        return {"processed": False, "idempotent": True, "event_id": delivery.event_id}

    try:
        outcome = apply_recorded_event(db, delivery.event_id, now=now, policy=policy)
    except Exception as e:
        db.rollback()
        logger.error(
            f"Lifecycle event {delivery.event_id} recorded but processing failed: {e}",
            exc_info=True,
            extra=log_fields(
                "lifecycle.processing_failed",
                event_id=delivery.event_id,
                provider=provider,
                event_type=delivery.event_type,
            ),
        )
        _record_failure(db, delivery.event_id, e)
        return {"processed": False, "event_id": delivery.event_id, "outcome": Outcome.FAILED}

    return {
        "processed": True,
        "event_id": delivery.event_id,
        "event_type": delivery.event_type,
        "outcome": outcome,
    }


def _record_failure(
    db: Session,
    event_id: str,
    error: Exception,
    *,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> bool:
    try:
        return mark_failed(
            db,
            event_id,
            error=f"{type(error).__name__}: {error}",
            now=now,
            max_attempts=max_attempts,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Could not mark lifecycle event {event_id} as failed: {e}",
            extra=log_fields("lifecycle.mark_failed_error", event_id=event_id),
        )
        return False


def apply_recorded_event(db: Session, event_id: str, *, now: datetime, policy: CadencePolicy) -> str:
    """
    Apply one ledger row to its profile and mark it processed. Commits.

    Safe to repeat: a processed row is left alone, and transitions write
    absolute field values.
    """
    row = get_event(db, event_id)
    if row is None:
        raise LookupError(f"lifecycle event {event_id} is not in the ledger")
    if row.processed_at is not None:
        return row.outcome

    row.attempts = (row.attempts or 0) + 1
    db.add(row)

    try:
        delivery = parse_delivery(row.provider, row.payload)
    except MalformedEventError as e:
        logger.warning(
            f"Stored lifecycle event {event_id} is unreadable: {e}",
            extra=log_fields("lifecycle.malformed", event_id=event_id, provider=row.provider),
        )
        mark_processed(db, row, outcome=Outcome.IGNORED, processed_at=now)
        row.last_error = str(e)
        db.commit()
        return Outcome.IGNORED

    event = delivery.event
    if isinstance(event, UnknownEvent):
        logger.info(
            f"Unhandled lifecycle event type {delivery.event_type}",
            extra=log_fields("lifecycle.unhandled", event_id=event_id, event_type=delivery.event_type),
        )
        mark_processed(db, row, outcome=Outcome.IGNORED, processed_at=now)
        db.commit()
        return Outcome.IGNORED

    try:
        profile = resolve_profile_for_event(db, row.provider, event.target, now=now, policy=policy)
    except UnresolvableEventError as e:
        logger.warning(
            f"Lifecycle event {event_id} dropped: {e.reason}",
            extra=log_fields(
                "lifecycle.unresolvable",
                event_id=event_id,
                provider=row.provider,
                event_type=delivery.event_type,
            ),
        )
        mark_processed(db, row, outcome=Outcome.UNRESOLVABLE, processed_at=now)
        row.last_error = e.reason
        db.commit()
        return Outcome.UNRESOLVABLE

    previous_status = profile.entitlement_status
    result = transition(ProfileState.from_profile(profile), event, now=now, policy=policy)
    if result.handled:
        apply_updates(profile, result.profile_updates())
        db.add(profile)
        outcome = Outcome.APPLIED
    else:
        outcome = Outcome.IGNORED

    logger.log(
        result.log_level,
        f"Lifecycle event {event_id}: {result.message}",
        extra=log_fields(
            "entitlement.transition",
            user_id=profile.user_id,
            event_id=event_id,
            event_type=delivery.event_type,
            from_status=previous_status,
            to_status=profile.entitlement_status,
            outcome=outcome,
        ),
    )

    mark_processed(db, row, outcome=outcome, processed_at=now)
    db.commit()
    return outcome


def reprocess_pending_events(
    db: Session,
    *,
    now: datetime,
    policy: CadencePolicy,
    older_than: timedelta,
    limit: int,
    max_attempts: Optional[int] = None,
) -> Dict[str, int]:
    """
    Re-apply ledger rows that never finished processing.

    A row that has failed ``max_attempts`` times is closed with outcome
    ``failed`` and left for manual reconciliation.
    """
    counts = {"scanned": 0, "applied": 0, "ignored": 0, "unresolvable": 0, "failed": 0}
    pending_ids = [row.event_id for row in list_pending(db, now=now, older_than=older_than, limit=limit)]

    for event_id in pending_ids:
        counts["scanned"] += 1
        try:
            outcome = apply_recorded_event(db, event_id, now=now, policy=policy)
        except Exception as e:
            db.rollback()
            logger.error(
                f"Reprocessing lifecycle event {event_id} failed: {e}",
                exc_info=True,
                extra=log_fields("lifecycle.reprocess_failed", event_id=event_id),
            )
            if _record_failure(db, event_id, e, now=now, max_attempts=max_attempts):
                logger.error(
                    f"Giving up on lifecycle event {event_id} after {max_attempts} attempts",
                    extra=log_fields("lifecycle.reprocess_gave_up", event_id=event_id, attempts=max_attempts),
                )
            counts["failed"] += 1
            continue
        counts[outcome] = counts.get(outcome, 0) + 1

    if counts["scanned"]:
        logger.info(
            f"Reprocessed {counts['scanned']} pending lifecycle events",
            extra=log_fields("lifecycle.reprocess_batch", **counts),
        )
    return counts
