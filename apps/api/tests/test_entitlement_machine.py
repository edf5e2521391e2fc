"""
State machine transitions: one arm per lifecycle variant, no I/O.
"""
import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from models import EntitlementStatus
from services.entitlement_machine import ProfileState, transition
from services.lifecycle_events import (
    BillingIssue,
    Cancellation,
    CheckoutCompleted,
    EventTarget,
    Expiration,
    InitialPurchase,
    PaymentFailed,
    PaymentSucceeded,
    ProductChange,
    Renewal,
    SubscriptionUpdated,
    TrialStarted,
    UnknownEvent,
)
from services.scheduler import CadencePolicy

NOW = datetime(2024, 3, 8, 12, 0, tzinfo=timezone.utc)
POLICY = CadencePolicy()
TARGET = EventTarget(user_id=uuid4(), customer_id="cus_1")


def _apply(state, event):
    return transition(state, event, now=NOW, policy=POLICY)


def test_initial_purchase_activates_and_records_metadata():
    expires = NOW + timedelta(days=30)
    result = _apply(
        ProfileState(),
        InitialPurchase(target=TARGET, product_id="pro_monthly", platform="apple", expires_at=expires),
    )

    assert result.status == EntitlementStatus.ACTIVE
    updates = result.profile_updates()
    assert updates["ever_subscribed"] is True
    assert updates["subscription_platform"] == "apple"
    assert updates["subscription_product_id"] == "pro_monthly"
    assert updates["subscription_expires_at"] == expires
    assert updates["entitlement_status"] == EntitlementStatus.ACTIVE


def test_renewal_refreshes_expiry_only():
    expires = NOW + timedelta(days=60)
    result = _apply(ProfileState(entitlement_status=EntitlementStatus.GRACE), Renewal(target=TARGET, expires_at=expires))

    assert result.status == EntitlementStatus.ACTIVE
    assert result.updates == {"subscription_expires_at": expires}


def test_cancellation_keeps_status():
    result = _apply(ProfileState(entitlement_status=EntitlementStatus.ACTIVE), Cancellation(target=TARGET))

    assert result.status is None
    assert result.handled is True
    assert result.profile_updates() == {}


def test_expiration_and_billing_issue():
    assert _apply(ProfileState(), Expiration(target=TARGET)).status == EntitlementStatus.CANCELED
    billing = _apply(ProfileState(), BillingIssue(target=TARGET))
    assert billing.status == EntitlementStatus.GRACE
    assert billing.log_level == logging.WARNING


def test_product_change_only_touches_product():
    result = _apply(ProfileState(entitlement_status=EntitlementStatus.ACTIVE), ProductChange(target=TARGET, product_id="pro_annual"))

    assert result.status is None
    assert result.profile_updates() == {"subscription_product_id": "pro_annual"}


def test_checkout_completed_starts_cadence_when_missing():
    result = _apply(
        ProfileState(timezone="America/New_York"),
        CheckoutCompleted(target=TARGET, subscription_id="sub_1"),
    )

    assert result.status == EntitlementStatus.ACTIVE
    assert result.updates["current_week_number"] == 1
    assert result.updates["next_week_due_at"] == datetime(2024, 3, 15, 23, 0, tzinfo=timezone.utc)
    assert result.updates["stripe_customer_id"] == "cus_1"
    assert result.updates["active_subscription_id"] == "sub_1"


def test_checkout_completed_keeps_existing_cadence_and_customer():
    due = datetime(2024, 3, 10, 19, 0, tzinfo=timezone.utc)
    state = ProfileState(current_week_number=4, next_week_due_at=due, stripe_customer_id="cus_existing")

    result = _apply(state, CheckoutCompleted(target=TARGET))

    assert "current_week_number" not in result.updates
    assert "next_week_due_at" not in result.updates
    assert "stripe_customer_id" not in result.updates


def test_checkout_completed_keeps_first_referral_code():
    fresh = _apply(ProfileState(), CheckoutCompleted(target=TARGET, referral_code="COACH_SAM"))
    attributed = _apply(ProfileState(referral_code="FIRST"), CheckoutCompleted(target=TARGET, referral_code="COACH_SAM"))

    assert fresh.updates["referral_code"] == "COACH_SAM"
    assert "referral_code" not in attributed.updates


@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("trialing", EntitlementStatus.ACTIVE),
        ("active", EntitlementStatus.ACTIVE),
        ("past_due", EntitlementStatus.GRACE),
        ("unpaid", EntitlementStatus.GRACE),
        ("incomplete", EntitlementStatus.GRACE),
        ("canceled", EntitlementStatus.CANCELED),
        ("incomplete_expired", EntitlementStatus.CANCELED),
    ],
)
def test_subscription_updated_status_map(provider_status, expected):
    result = _apply(ProfileState(), SubscriptionUpdated(target=TARGET, provider_status=provider_status))
    assert result.status == expected


def test_subscription_updated_unknown_status_is_noop_warning():
    result = _apply(
        ProfileState(entitlement_status=EntitlementStatus.ACTIVE),
        SubscriptionUpdated(target=TARGET, provider_status="paused"),
    )

    assert result.handled is False
    assert result.status is None
    assert result.log_level == logging.WARNING
    assert result.profile_updates() == {}


def test_invoice_events():
    assert _apply(ProfileState(), PaymentSucceeded(target=TARGET)).status == EntitlementStatus.ACTIVE
    assert _apply(ProfileState(), PaymentFailed(target=TARGET)).status == EntitlementStatus.PAST_DUE


def test_trial_started_sets_trial_window_and_cadence():
    result = _apply(ProfileState(timezone="UTC"), TrialStarted(target=TARGET))

    assert result.status == EntitlementStatus.TRIAL
    assert result.updates["trial_started_at"] == NOW
    assert result.updates["trial_ends_at"] == NOW + timedelta(days=7)
    assert result.updates["ever_started_trial"] is True
    assert result.updates["current_week_number"] == 1
    assert result.updates["next_week_due_at"] == datetime(2024, 3, 15, 19, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("status", [EntitlementStatus.ACTIVE, EntitlementStatus.GRACE, EntitlementStatus.PAST_DUE])
def test_trial_started_ignored_with_paid_access(status):
    result = _apply(ProfileState(entitlement_status=status), TrialStarted(target=TARGET))
    assert result.handled is False
    assert result.status is None


def test_unknown_event_is_explicit_noop():
    result = _apply(ProfileState(), UnknownEvent(event_type="TRANSFER"))
    assert result.handled is False
    assert result.profile_updates() == {}


def test_non_event_raises():
    with pytest.raises(TypeError):
        _apply(ProfileState(), object())


def test_transition_is_repeatable():
    state = ProfileState(timezone="Europe/London")
    event = CheckoutCompleted(target=TARGET, subscription_id="sub_9")
    assert _apply(state, event) == _apply(state, event)
