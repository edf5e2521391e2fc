"""
FastAPI dependencies for the process-wide handles built in ``create_app``.
"""
from typing import Optional

from fastapi import Request

from core.clock import Clock
from core.config import Settings
from services.scheduler import CadencePolicy
from services.scoring import Scorer
from services.stripe_service import StripeService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_policy(request: Request) -> CadencePolicy:
    return request.app.state.policy


def get_scorer(request: Request) -> Scorer:
    return request.app.state.scorer


def get_stripe_service(request: Request) -> Optional[StripeService]:
    return request.app.state.stripe_service
