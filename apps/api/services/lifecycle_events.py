"""
Provider lifecycle events as a closed set of variants.

Webhook bodies from RevenueCat and Stripe are parsed into one of the frozen
dataclasses below; anything unrecognised becomes ``UnknownEvent`` so the
state machine always sees an explicit arm rather than a silent default.

Parsers work on the raw JSON body (a dict) so the ledger's stored payload can
be re-parsed later by the reconciliation worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union
from uuid import UUID

from services.referrals import normalize_referral_code


class Provider:
    STRIPE = "stripe"
    REVENUECAT = "revenuecat"


@dataclass(frozen=True)
class EventTarget:
    """Who an event is about: our user id and/or the provider's customer id."""

    user_id: Optional[UUID] = None
    customer_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.user_id is None and not self.customer_id


@dataclass(frozen=True)
class InitialPurchase:
    target: EventTarget
    product_id: Optional[str] = None
    platform: str = "web"
    expires_at: Optional[datetime] = None
    original_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class Renewal:
    target: EventTarget
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class Cancellation:
    target: EventTarget


@dataclass(frozen=True)
class Expiration:
    target: EventTarget


@dataclass(frozen=True)
class BillingIssue:
    target: EventTarget


@dataclass(frozen=True)
class ProductChange:
    target: EventTarget
    product_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutCompleted:
    target: EventTarget
    subscription_id: Optional[str] = None
    referral_code: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionUpdated:
    target: EventTarget
    provider_status: str = ""
    subscription_id: Optional[str] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentSucceeded:
    target: EventTarget
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed:
    target: EventTarget


@dataclass(frozen=True)
class TrialStarted:
    """Explicit in-app trial start (not a provider event)."""

    target: EventTarget
    trial_ends_at: Optional[datetime] = None


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str
    target: EventTarget = field(default_factory=EventTarget)


LifecycleEvent = Union[
    InitialPurchase,
    Renewal,
    Cancellation,
    Expiration,
    BillingIssue,
    ProductChange,
    CheckoutCompleted,
    SubscriptionUpdated,
    PaymentSucceeded,
    PaymentFailed,
    TrialStarted,
    UnknownEvent,
]


@dataclass(frozen=True)
class ParsedDelivery:
    event_id: str
    event_type: str
    event: LifecycleEvent


class MalformedEventError(ValueError):
    """Webhook body is not a lifecycle event at all (no id, wrong shape)."""


def _str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _uuid(value: Any) -> Optional[UUID]:
    raw = _str(value)
    if raw is None:
        return None
    try:
        return UUID(raw)
    except ValueError:
        return None


def _from_epoch_ms(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def _from_epoch_s(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


# --- RevenueCat -------------------------------------------------------------

_RC_STORE_PLATFORMS = {
    "APP_STORE": "apple",
    "MAC_APP_STORE": "apple",
    "PLAY_STORE": "google",
    "STRIPE": "stripe",
}


def parse_revenuecat_event(body: Any) -> ParsedDelivery:
    """
    Parse a RevenueCat webhook body: ``{"api_version": ..., "event": {...}}``.

    ``app_user_id`` is our user id; a non-UUID value (anonymous RevenueCat
    id) can only match a profile through its stored ``rc_customer_id``.
    """
    if not isinstance(body, Mapping):
        raise MalformedEventError("body must be a JSON object")
    data = body.get("event")
    if not isinstance(data, Mapping):
        raise MalformedEventError("missing event object")

    event_id = _str(data.get("id"))
    if not event_id:
        raise MalformedEventError("missing event id")
    event_type = _str(data.get("type")) or "UNKNOWN"

    target = EventTarget(user_id=_uuid(data.get("app_user_id")), customer_id=_str(data.get("app_user_id")))
    expires_at = _from_epoch_ms(data.get("expiration_at_ms"))
    product_id = _str(data.get("product_id"))

    if event_type == "INITIAL_PURCHASE":
        event: LifecycleEvent = InitialPurchase(
            target=target,
            product_id=product_id,
            platform=_RC_STORE_PLATFORMS.get(_str(data.get("store")) or "", "web"),
            expires_at=expires_at,
            original_transaction_id=_str(data.get("original_transaction_id")),
        )
    elif event_type == "RENEWAL":
        event = Renewal(target=target, expires_at=expires_at)
    elif event_type == "CANCELLATION":
        event = Cancellation(target=target)
    elif event_type == "EXPIRATION":
        event = Expiration(target=target)
    elif event_type == "BILLING_ISSUE":
        event = BillingIssue(target=target)
    elif event_type == "PRODUCT_CHANGE":
        event = ProductChange(target=target, product_id=_str(data.get("new_product_id")) or product_id)
    else:
        event = UnknownEvent(event_type=event_type, target=target)

    return ParsedDelivery(event_id=event_id, event_type=event_type, event=event)


# --- Stripe -----------------------------------------------------------------

def _stripe_id(value: Any) -> Optional[str]:
    # Expandable fields arrive either as an id string or an object with "id".
    if isinstance(value, Mapping):
        return _str(value.get("id"))
    return _str(value)


def _stripe_metadata_user(obj: Mapping[str, Any]) -> Optional[UUID]:
    metadata = obj.get("metadata")
    if isinstance(metadata, Mapping):
        return _uuid(metadata.get("user_id"))
    return None


def _stripe_metadata_referral(obj: Mapping[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata")
    if isinstance(metadata, Mapping):
        return normalize_referral_code(metadata.get("referral_code"))
    return None


def extract_current_period_end(obj: Mapping[str, Any]) -> Optional[datetime]:
    """
    Stripe API compatibility:
    - Older API versions: ``subscription.current_period_end`` (top-level)
    - Newer API versions: billing period fields live on ``subscription.items.data[*]``
    Falls back to ``cancel_at`` when no period end is present.
    """
    top_level = _from_epoch_s(obj.get("current_period_end"))
    if top_level is not None:
        return top_level

    items = obj.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    ends = [
        _from_epoch_s(item.get("current_period_end"))
        for item in (data or [])
        if isinstance(item, Mapping)
    ]
    ends = [e for e in ends if e is not None]
    if ends:
        return max(ends)

    return _from_epoch_s(obj.get("cancel_at"))


def parse_stripe_event(body: Any) -> ParsedDelivery:
    """Parse a (signature-verified) Stripe event body."""
    if not isinstance(body, Mapping):
        raise MalformedEventError("body must be a JSON object")
    event_id = _str(body.get("id"))
    if not event_id:
        raise MalformedEventError("missing event id")
    event_type = _str(body.get("type")) or "unknown"

    data = body.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        obj = {}

    customer_id = _stripe_id(obj.get("customer"))

    if event_type == "checkout.session.completed":
        user_id = _stripe_metadata_user(obj) or _uuid(obj.get("client_reference_id"))
        event: LifecycleEvent = CheckoutCompleted(
            target=EventTarget(user_id=user_id, customer_id=customer_id),
            subscription_id=_stripe_id(obj.get("subscription")),
            referral_code=_stripe_metadata_referral(obj),
        )
    elif event_type in (
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ):
        status = "canceled" if event_type == "customer.subscription.deleted" else (_str(obj.get("status")) or "")
        event = SubscriptionUpdated(
            target=EventTarget(user_id=_stripe_metadata_user(obj), customer_id=customer_id),
            provider_status=status.lower(),
            subscription_id=_stripe_id(obj.get("id")),
            period_end=extract_current_period_end(obj),
        )
    elif event_type == "invoice.payment_succeeded":
        event = PaymentSucceeded(
            target=EventTarget(customer_id=customer_id),
            subscription_id=_stripe_id(obj.get("subscription")),
        )
    elif event_type == "invoice.payment_failed":
        event = PaymentFailed(target=EventTarget(customer_id=customer_id))
    else:
        event = UnknownEvent(event_type=event_type, target=EventTarget(customer_id=customer_id))

    return ParsedDelivery(event_id=event_id, event_type=event_type, event=event)


def parse_delivery(provider: str, body: Any) -> ParsedDelivery:
    if provider == Provider.STRIPE:
        return parse_stripe_event(body)
    if provider == Provider.REVENUECAT:
        return parse_revenuecat_event(body)
    raise MalformedEventError(f"unknown provider {provider!r}")
