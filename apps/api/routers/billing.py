from __future__ import annotations

import hmac
import json
import logging
from typing import Optional
from uuid import UUID

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.clock import Clock
from core.config import Settings
from core.database import get_db
from core.dependencies import get_clock, get_policy, get_settings, get_stripe_service
from core.exceptions import InvalidPayloadError, ProviderNotConfiguredError, UnauthorizedError
from core.logging import log_fields
from schemas import CheckoutRequest, RedirectUrlResponse, StartTrialRequest, StartTrialResponse
from services.lifecycle_events import MalformedEventError, Provider, parse_revenuecat_event, parse_stripe_event
from services.lifecycle_processing import ingest_lifecycle_event
from services.profile_service import ensure_profile, start_trial as start_trial_for_user
from services.referrals import normalize_referral_code
from services.scheduler import CadencePolicy
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing", tags=["billing"])


def _require_stripe(svc: Optional[StripeService]) -> StripeService:
    if svc is None:
        raise ProviderNotConfiguredError("Stripe not configured")
    return svc


@router.post("/trial/start", response_model=StartTrialResponse)
def start_trial(
    request: StartTrialRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    policy: CadencePolicy = Depends(get_policy),
):
    """
    Start the free trial.

    Policy:
    - One trial per user: repeating the call returns the existing trial
    - Cannot start a trial while a paid subscription is active (409)
    - The first check-in is due 7 days out at 19:00 in the given timezone
    """
    profile = start_trial_for_user(
        db,
        user_id,
        now=clock.now(),
        policy=policy,
        timezone_name=request.timezone,
    )
    return StartTrialResponse.model_validate(profile)


@router.post("/checkout", response_model=RedirectUrlResponse)
def create_checkout(
    request: CheckoutRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    stripe_service: Optional[StripeService] = Depends(get_stripe_service),
):
    """
    Create a Stripe Checkout Session (subscription). Returns a hosted URL.
    """
    svc = _require_stripe(stripe_service)
    referral_code = None
    if request.referral_code is not None:
        referral_code = normalize_referral_code(request.referral_code)
        if referral_code is None:
            raise InvalidPayloadError("referral_code is not a valid code", field="referral_code")
    profile = ensure_profile(db, user_id)
    try:
        url = svc.create_checkout_session(
            user_id=user_id,
            customer_id=profile.stripe_customer_id,
            billing_period=request.billing_period,
            referral_code=referral_code,
        )
    except stripe.StripeError as e:
        logger.error(
            f"Stripe checkout session failed: {e}",
            extra=log_fields("billing.checkout_failed", user_id=user_id),
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create checkout session")
    return {"url": url}


@router.post("/portal", response_model=RedirectUrlResponse)
def create_portal(
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    stripe_service: Optional[StripeService] = Depends(get_stripe_service),
):
    """
    Create a Stripe Customer Portal Session. Returns a hosted URL.
    """
    svc = _require_stripe(stripe_service)
    profile = ensure_profile(db, user_id)
    try:
        url = svc.create_portal_session(customer_id=profile.stripe_customer_id)
    except ValueError as e:
        raise InvalidPayloadError(str(e))
    except stripe.StripeError as e:
        logger.error(
            f"Stripe portal session failed: {e}",
            extra=log_fields("billing.portal_failed", user_id=user_id),
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create portal session")
    return {"url": url}


def _json_body(raw: bytes):
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise InvalidPayloadError("Webhook body is not valid JSON")


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_service: Optional[StripeService] = Depends(get_stripe_service),
    clock: Clock = Depends(get_clock),
    policy: CadencePolicy = Depends(get_policy),
):
    """
    Stripe webhook endpoint.

    Verifies the signature before anything touches the ledger, then records
    and processes the event idempotently.
    """
    sig = request.headers.get("stripe-signature")
    if not sig:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    svc = _require_stripe(stripe_service)
    payload = await request.body()
    try:
        svc.construct_event(payload=payload, sig_header=sig)
    except (ValueError, stripe.SignatureVerificationError):
        # Signature verification errors should return 400 so Stripe can retry appropriately.
        logger.warning("Rejected Stripe webhook with invalid signature", extra=log_fields("lifecycle.rejected"))
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    body = _json_body(payload)
    try:
        delivery = parse_stripe_event(body)
    except MalformedEventError as e:
        raise InvalidPayloadError(str(e))

    result = ingest_lifecycle_event(
        db,
        provider=Provider.STRIPE,
        delivery=delivery,
        payload=body,
        now=clock.now(),
        policy=policy,
    )
    return {"ok": True, "result": result}


def _revenuecat_authorized(header: Optional[str], secret: str) -> bool:
    if not header:
        return False
    token = header[7:] if header.lower().startswith("bearer ") else header
    return hmac.compare_digest(token.strip().encode(), secret.encode())


@router.post("/webhooks/revenuecat")
async def revenuecat_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
    policy: CadencePolicy = Depends(get_policy),
):
    """
    RevenueCat webhook endpoint (in-app purchases).

    Authenticated by the shared secret RevenueCat sends as the Authorization
    header. Fails closed when the secret is not configured.
    """
    secret = settings.REVENUECAT_WEBHOOK_SECRET
    if not secret:
        raise ProviderNotConfiguredError("RevenueCat webhook secret not configured")
    if not _revenuecat_authorized(request.headers.get("authorization"), secret):
        logger.warning("Rejected RevenueCat webhook with bad credentials", extra=log_fields("lifecycle.rejected"))
        raise UnauthorizedError("Invalid webhook credentials")

    body = _json_body(await request.body())
    try:
        delivery = parse_revenuecat_event(body)
    except MalformedEventError as e:
        raise InvalidPayloadError(str(e))

    result = ingest_lifecycle_event(
        db,
        provider=Provider.REVENUECAT,
        delivery=delivery,
        payload=body,
        now=clock.now(),
        policy=policy,
    )
    return {"ok": True, "result": result}
