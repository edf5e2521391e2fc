from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import stripe

from core.config import Settings
from core.exceptions import ProviderNotConfiguredError


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    webhook_secret: Optional[str]
    monthly_price_id: Optional[str]
    annual_price_id: Optional[str]
    checkout_success_url: str
    checkout_cancel_url: str
    portal_return_url: str


def stripe_config_from_settings(settings: Settings) -> Optional[StripeConfig]:
    """
    Stripe config from Settings, or None when no secret key is set.

    Redirect/return URLs default to WEB_APP_BASE_URL so local dev can proceed
    without extra env config.
    """
    if not settings.STRIPE_SECRET_KEY:
        return None

    base = settings.WEB_APP_BASE_URL.rstrip("/")
    return StripeConfig(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET or None,
        monthly_price_id=settings.STRIPE_PRICE_MONTHLY_ID or None,
        annual_price_id=settings.STRIPE_PRICE_ANNUAL_ID or None,
        checkout_success_url=settings.STRIPE_CHECKOUT_SUCCESS_URL or f"{base}/settings?stripe=success",
        checkout_cancel_url=settings.STRIPE_CHECKOUT_CANCEL_URL or f"{base}/settings?stripe=cancel",
        portal_return_url=settings.STRIPE_PORTAL_RETURN_URL or f"{base}/settings",
    )


class StripeService:
    """
    Thin wrapper over the Stripe SDK. The API key is passed per call; nothing
    is written to the module-global ``stripe.api_key``.
    """

    def __init__(self, config: StripeConfig) -> None:
        self.cfg = config

    def create_checkout_session(
        self,
        *,
        user_id: UUID,
        customer_id: Optional[str] = None,
        billing_period: str = "annual",
        referral_code: Optional[str] = None,
    ) -> str:
        """
        Create a hosted Checkout session for a subscription.

        The user id travels as both ``client_reference_id`` and metadata so
        the ``checkout.session.completed`` webhook can find the profile. A
        referral code, if any, rides in the same metadata.
        """
        if billing_period == "annual" and self.cfg.annual_price_id:
            price_id = self.cfg.annual_price_id
        else:
            price_id = self.cfg.monthly_price_id
        if not price_id:
            raise ProviderNotConfiguredError("Stripe not configured (missing: STRIPE_PRICE_MONTHLY_ID)")

        params: dict[str, Any] = {
            "mode": "subscription",
            "success_url": self.cfg.checkout_success_url,
            "cancel_url": self.cfg.checkout_cancel_url,
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": str(user_id),
            "metadata": {"user_id": str(user_id), "billing_period": billing_period},
            "subscription_data": {"metadata": {"user_id": str(user_id)}},
        }
        if referral_code:
            params["metadata"]["referral_code"] = referral_code
        if customer_id:
            params["customer"] = customer_id

        session = stripe.checkout.Session.create(api_key=self.cfg.secret_key, **params)
        return str(session.url)

    def create_portal_session(self, *, customer_id: Optional[str]) -> str:
        if not customer_id:
            raise ValueError("No Stripe customer for this profile")
        sess = stripe.billing_portal.Session.create(
            api_key=self.cfg.secret_key,
            customer=str(customer_id),
            return_url=self.cfg.portal_return_url,
        )
        return str(sess.url)

    def construct_event(self, *, payload: bytes, sig_header: str):
        """Verify the Stripe-Signature header; raises on a bad signature or body."""
        if not self.cfg.webhook_secret:
            raise ProviderNotConfiguredError("Stripe webhook secret not configured")
        return stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=self.cfg.webhook_secret,
        )


def build_stripe_service(settings: Settings) -> Optional[StripeService]:
    config = stripe_config_from_settings(settings)
    if config is None:
        return None
    return StripeService(config)
