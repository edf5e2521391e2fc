"""
Webhook body parsing for RevenueCat and Stripe.
"""
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from services.lifecycle_events import (
    BillingIssue,
    CheckoutCompleted,
    InitialPurchase,
    MalformedEventError,
    PaymentFailed,
    PaymentSucceeded,
    ProductChange,
    Provider,
    Renewal,
    SubscriptionUpdated,
    UnknownEvent,
    extract_current_period_end,
    parse_delivery,
    parse_revenuecat_event,
    parse_stripe_event,
)


def _rc(event_type, **fields):
    return {"api_version": "1.0", "event": {"id": "rc_evt_1", "type": event_type, **fields}}


def test_revenuecat_initial_purchase():
    user_id = uuid4()
    delivery = parse_revenuecat_event(
        _rc(
            "INITIAL_PURCHASE",
            app_user_id=str(user_id),
            product_id="pro_monthly",
            store="APP_STORE",
            expiration_at_ms=1710000000000,
            original_transaction_id="1000",
        )
    )

    assert delivery.event_id == "rc_evt_1"
    event = delivery.event
    assert isinstance(event, InitialPurchase)
    assert event.target.user_id == user_id
    assert event.platform == "apple"
    assert event.expires_at == datetime.fromtimestamp(1710000000, tz=timezone.utc)
    assert event.original_transaction_id == "1000"


def test_revenuecat_anonymous_user_keeps_customer_id():
    delivery = parse_revenuecat_event(_rc("RENEWAL", app_user_id="$RCAnonymousID:abc"))

    assert isinstance(delivery.event, Renewal)
    assert delivery.event.target.user_id is None
    assert delivery.event.target.customer_id == "$RCAnonymousID:abc"


def test_revenuecat_product_change_prefers_new_product():
    delivery = parse_revenuecat_event(_rc("PRODUCT_CHANGE", product_id="old", new_product_id="new"))
    assert isinstance(delivery.event, ProductChange)
    assert delivery.event.product_id == "new"


def test_revenuecat_billing_issue_and_unknown():
    assert isinstance(parse_revenuecat_event(_rc("BILLING_ISSUE")).event, BillingIssue)
    unknown = parse_revenuecat_event(_rc("TRANSFER"))
    assert isinstance(unknown.event, UnknownEvent)
    assert unknown.event_type == "TRANSFER"


@pytest.mark.parametrize("body", [None, [], {"event": None}, {"event": {"type": "RENEWAL"}}])
def test_revenuecat_malformed(body):
    with pytest.raises(MalformedEventError):
        parse_revenuecat_event(body)


def _stripe(event_type, obj):
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def test_stripe_checkout_completed_reads_metadata_then_reference():
    user_id = uuid4()
    delivery = parse_stripe_event(
        _stripe(
            "checkout.session.completed",
            {"customer": "cus_1", "subscription": "sub_1", "client_reference_id": str(user_id)},
        )
    )

    event = delivery.event
    assert isinstance(event, CheckoutCompleted)
    assert event.target.user_id == user_id
    assert event.target.customer_id == "cus_1"
    assert event.subscription_id == "sub_1"
    assert event.referral_code is None


@pytest.mark.parametrize(
    "raw,expected",
    [(" coach_sam ", "COACH_SAM"), ("CODE-2024", "CODE-2024"), ("bad code", None), ("x" * 21, None), (42, None)],
)
def test_stripe_checkout_completed_reads_referral_code(raw, expected):
    delivery = parse_stripe_event(
        _stripe(
            "checkout.session.completed",
            {"customer": "cus_1", "metadata": {"user_id": str(uuid4()), "referral_code": raw}},
        )
    )

    assert delivery.event.referral_code == expected


def test_stripe_subscription_deleted_is_canceled():
    delivery = parse_stripe_event(
        _stripe("customer.subscription.deleted", {"id": "sub_1", "customer": {"id": "cus_1"}, "status": "active"})
    )
    assert isinstance(delivery.event, SubscriptionUpdated)
    assert delivery.event.provider_status == "canceled"
    assert delivery.event.target.customer_id == "cus_1"


def test_stripe_invoice_events():
    ok = parse_stripe_event(_stripe("invoice.payment_succeeded", {"customer": "cus_1", "subscription": "sub_1"}))
    failed = parse_stripe_event(_stripe("invoice.payment_failed", {"customer": "cus_1"}))
    assert isinstance(ok.event, PaymentSucceeded)
    assert ok.event.subscription_id == "sub_1"
    assert isinstance(failed.event, PaymentFailed)


def test_stripe_unhandled_type():
    delivery = parse_stripe_event(_stripe("charge.refunded", {"customer": "cus_1"}))
    assert isinstance(delivery.event, UnknownEvent)


def test_stripe_missing_id_is_malformed():
    with pytest.raises(MalformedEventError):
        parse_stripe_event({"type": "invoice.payment_failed"})


def test_period_end_from_subscription_items():
    # Newer Stripe API versions place billing period fields on subscription items.
    obj = {"items": {"data": [{"current_period_end": 1700000000}, {"current_period_end": 1710000000}]}}
    assert extract_current_period_end(obj) == datetime.fromtimestamp(1710000000, tz=timezone.utc)
    assert extract_current_period_end({"current_period_end": 1700000000}) == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert extract_current_period_end({"cancel_at": 1690000000}) == datetime.fromtimestamp(1690000000, tz=timezone.utc)
    assert extract_current_period_end({}) is None


def test_parse_delivery_dispatches_by_provider():
    assert parse_delivery(Provider.STRIPE, _stripe("invoice.payment_failed", {})).event_id == "evt_1"
    assert parse_delivery(Provider.REVENUECAT, _rc("EXPIRATION")).event_id == "rc_evt_1"
    with pytest.raises(MalformedEventError):
        parse_delivery("paypal", {})
