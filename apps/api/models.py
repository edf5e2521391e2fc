from sqlalchemy import Column, Integer, Boolean, Float, DateTime, ForeignKey, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator
from core.database import Base
import uuid
from datetime import datetime, timezone


# JSONB on Postgres, plain JSON (TEXT) on SQLite.
JSONType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC instant on every backend.

    SQLite drops tzinfo on the way back; values are normalized to UTC on
    write and re-tagged as UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime stored in a UTC column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementStatus:
    NONE = "none"
    TRIAL = "trial"
    ACTIVE = "active"
    GRACE = "grace"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

    ALL = (NONE, TRIAL, ACTIVE, GRACE, PAST_DUE, CANCELED)


class Profile(Base):
    """
    One row per user: entitlement state plus the weekly cadence.

    entitlement_status is only ever written from a state-machine transition
    (lifecycle events) or the explicit trial start.
    """

    __tablename__ = "profiles"

    user_id = Column(Uuid(as_uuid=True), primary_key=True)
    created_at = Column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    # --- ENTITLEMENT ---
    entitlement_status = Column(Text, default=EntitlementStatus.NONE, nullable=False)
    ever_subscribed = Column(Boolean, default=False, nullable=False)
    ever_started_trial = Column(Boolean, default=False, nullable=False)
    trial_started_at = Column(UTCDateTime(), nullable=True)
    trial_ends_at = Column(UTCDateTime(), nullable=True)

    # --- BILLING PROVIDER REFERENCES ---
    stripe_customer_id = Column(Text, nullable=True, unique=True)
    active_subscription_id = Column(Text, nullable=True)
    rc_customer_id = Column(Text, nullable=True)
    subscription_platform = Column(Text, nullable=True)  # apple|google|stripe|web
    subscription_product_id = Column(Text, nullable=True)
    subscription_expires_at = Column(UTCDateTime(), nullable=True)
    original_transaction_id = Column(Text, nullable=True)
    referral_code = Column(Text, nullable=True)  # first-touch attribution from checkout

    # --- CADENCE ---
    current_week_number = Column(Integer, nullable=True)  # null until the cadence starts
    next_week_due_at = Column(UTCDateTime(), nullable=True)
    timezone = Column(Text, nullable=True)  # IANA name; UTC when unset

    # Versioned score snapshot, see services/result_snapshot.py
    last_result = Column(JSONType, nullable=True)

    # --- DERIVED PREFERENCES (backfilled from intake answers) ---
    measurement_prefs = Column(JSONType, nullable=True)
    smoking_prefs = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_profiles_stripe_customer_id", "stripe_customer_id"),
    )


class LifecycleEvent(Base):
    """
    Append-only ledger of provider lifecycle notifications (idempotency guard).

    Providers retry deliveries; the primary key on event_id makes a duplicate
    delivery a no-op. processed_at stays null until processing finishes.
    """

    __tablename__ = "lifecycle_events"

    event_id = Column(Text, primary_key=True)  # provider-issued (evt_* for Stripe)
    provider = Column(Text, nullable=False)  # stripe|revenuecat
    event_type = Column(Text, nullable=False)
    payload = Column(JSONType, nullable=False)

    received_at = Column(UTCDateTime(), default=_utcnow, nullable=False)
    processed_at = Column(UTCDateTime(), nullable=True)
    outcome = Column(Text, nullable=True)  # applied|ignored|unresolvable|failed
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_lifecycle_events_event_type", "event_type"),
        Index("ix_lifecycle_events_processed_at", "processed_at"),
    )


class WeeklyCheckin(Base):
    """
    A weekly submission. The (user_id, week_number) uniqueness is what tells a
    second submission for the same week apart from a new one.
    """

    __tablename__ = "weekly_checkins"

    checkin_id = Column(Uuid(as_uuid=True), primary_key=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("profiles.user_id"), nullable=False, index=True)
    week_number = Column(Integer, nullable=False)
    submitted_at = Column(UTCDateTime(), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    due_at = Column(UTCDateTime(), nullable=True)  # rewritten whenever the cadence is recomputed
    created_at = Column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "week_number", name="uq_weekly_checkins_user_week"),
    )


class ScoreHistory(Base):
    """
    Append-only score history. At most one row per related check-in.
    """

    __tablename__ = "score_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("profiles.user_id"), nullable=False, index=True)
    source = Column(Text, nullable=False)  # intake|weekly_checkin|recalc
    related_checkin_id = Column(Uuid(as_uuid=True), nullable=True)
    week_number = Column(Integer, nullable=True)
    score = Column(Float, nullable=False)
    potential = Column(Float, nullable=True)
    model_version = Column(Text, nullable=False)
    generated_at = Column(UTCDateTime(), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("related_checkin_id", name="uq_score_history_related_checkin_id"),
        Index("ix_score_history_user_generated", "user_id", "generated_at"),
    )


class IntakeSubmission(Base):
    """Raw onboarding answer maps; the source for derived preference backfill."""

    __tablename__ = "intake_submissions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("profiles.user_id"), nullable=False, index=True)
    payload = Column(JSONType, nullable=False, default=dict)
    schema_version = Column(Text, nullable=True)
    submitted_at = Column(UTCDateTime(), default=_utcnow, nullable=False)
