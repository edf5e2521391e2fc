"""
Entitlement state machine.

``transition`` maps (current profile state, lifecycle event) to the new
entitlement status plus the profile fields to write. It performs no I/O;
"now" and the cadence policy are arguments. Updates are absolute values, so
applying the same transition twice leaves the same profile.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from models import EntitlementStatus
from services.lifecycle_events import (
    BillingIssue,
    Cancellation,
    CheckoutCompleted,
    Expiration,
    InitialPurchase,
    LifecycleEvent,
    PaymentFailed,
    PaymentSucceeded,
    ProductChange,
    Renewal,
    SubscriptionUpdated,
    TrialStarted,
    UnknownEvent,
)
from services.scheduler import CadencePolicy

_SUBSCRIPTION_STATUS_MAP = {
    "trialing": EntitlementStatus.ACTIVE,
    "active": EntitlementStatus.ACTIVE,
    "past_due": EntitlementStatus.GRACE,
    "unpaid": EntitlementStatus.GRACE,
    "incomplete": EntitlementStatus.GRACE,
    "canceled": EntitlementStatus.CANCELED,
    "incomplete_expired": EntitlementStatus.CANCELED,
}

_PAID_STATUSES = (EntitlementStatus.ACTIVE, EntitlementStatus.GRACE, EntitlementStatus.PAST_DUE)


@dataclass(frozen=True)
class ProfileState:
    entitlement_status: str = EntitlementStatus.NONE
    current_week_number: Optional[int] = None
    next_week_due_at: Optional[datetime] = None
    timezone: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    trial_started_at: Optional[datetime] = None
    referral_code: Optional[str] = None

    @classmethod
    def from_profile(cls, profile) -> "ProfileState":
        return cls(
            entitlement_status=profile.entitlement_status or EntitlementStatus.NONE,
            current_week_number=profile.current_week_number,
            next_week_due_at=profile.next_week_due_at,
            timezone=profile.timezone,
            stripe_customer_id=profile.stripe_customer_id,
            trial_started_at=profile.trial_started_at,
            referral_code=profile.referral_code,
        )


@dataclass(frozen=True)
class Transition:
    """
    Result of one event. ``status`` None means "leave status as is".
    ``log_level``/``message`` describe what the caller should log.
    """

    status: Optional[str]
    updates: Dict[str, Any] = field(default_factory=dict)
    handled: bool = True
    log_level: int = logging.INFO
    message: str = ""

    def profile_updates(self) -> Dict[str, Any]:
        out = dict(self.updates)
        if self.status is not None:
            out["entitlement_status"] = self.status
        return out


def _cadence_start(state: ProfileState, now: datetime, policy: CadencePolicy) -> Dict[str, Any]:
    if state.current_week_number is not None:
        return {}
    return {
        "current_week_number": 1,
        "next_week_due_at": policy.next_due(now, state.timezone),
    }


def transition(state: ProfileState, event: LifecycleEvent, *, now: datetime, policy: CadencePolicy) -> Transition:
    if isinstance(event, InitialPurchase):
        updates: Dict[str, Any] = {
            "ever_subscribed": True,
            "subscription_platform": event.platform,
            "subscription_product_id": event.product_id,
            "subscription_expires_at": event.expires_at,
            "original_transaction_id": event.original_transaction_id,
        }
        if event.target.customer_id:
            updates["rc_customer_id"] = event.target.customer_id
        return Transition(EntitlementStatus.ACTIVE, updates, message="initial purchase")

    if isinstance(event, Renewal):
        return Transition(
            EntitlementStatus.ACTIVE,
            {"subscription_expires_at": event.expires_at},
            message="renewal",
        )

    if isinstance(event, Cancellation):
        # Access continues until the provider's own expiration event.
        return Transition(None, message="cancellation, active until expiration")

    if isinstance(event, Expiration):
        return Transition(EntitlementStatus.CANCELED, message="expiration")

    if isinstance(event, BillingIssue):
        return Transition(EntitlementStatus.GRACE, log_level=logging.WARNING, message="billing issue")

    if isinstance(event, ProductChange):
        return Transition(None, {"subscription_product_id": event.product_id}, message="product change")

    if isinstance(event, CheckoutCompleted):
        updates = {"ever_subscribed": True}
        if event.target.customer_id and not state.stripe_customer_id:
            updates["stripe_customer_id"] = event.target.customer_id
        if event.subscription_id:
            updates["active_subscription_id"] = event.subscription_id
        if event.referral_code and not state.referral_code:
            updates["referral_code"] = event.referral_code
        updates.update(_cadence_start(state, now, policy))
        return Transition(EntitlementStatus.ACTIVE, updates, message="checkout completed")

    if isinstance(event, SubscriptionUpdated):
        status = _SUBSCRIPTION_STATUS_MAP.get(event.provider_status)
        if status is None:
            return Transition(
                None,
                handled=False,
                log_level=logging.WARNING,
                message=f"unrecognized subscription status {event.provider_status!r}",
            )
        updates = {}
        if event.subscription_id:
            updates["active_subscription_id"] = event.subscription_id
        if event.period_end is not None:
            updates["subscription_expires_at"] = event.period_end
        if event.target.customer_id and not state.stripe_customer_id:
            updates["stripe_customer_id"] = event.target.customer_id
        if status == EntitlementStatus.ACTIVE:
            updates["ever_subscribed"] = True
        return Transition(status, updates, message=f"subscription {event.provider_status}")

    if isinstance(event, PaymentSucceeded):
        updates = {"ever_subscribed": True}
        if event.subscription_id:
            updates["active_subscription_id"] = event.subscription_id
        return Transition(EntitlementStatus.ACTIVE, updates, message="payment succeeded")

    if isinstance(event, PaymentFailed):
        return Transition(EntitlementStatus.PAST_DUE, log_level=logging.WARNING, message="payment failed")

    if isinstance(event, TrialStarted):
        if state.entitlement_status in _PAID_STATUSES:
            return Transition(None, handled=False, message="trial start ignored, already has paid access")
        if state.trial_started_at is not None:
            return Transition(None, handled=False, message="trial already started")
        updates = {
            "trial_started_at": now,
            "trial_ends_at": event.trial_ends_at or now + policy.trial_duration,
            "ever_started_trial": True,
        }
        updates.update(_cadence_start(state, now, policy))
        return Transition(EntitlementStatus.TRIAL, updates, message="trial started")

    if isinstance(event, UnknownEvent):
        return Transition(None, handled=False, message=f"unhandled event type {event.event_type!r}")

    raise TypeError(f"not a lifecycle event: {event!r}")
