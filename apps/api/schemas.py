from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from uuid import UUID
from typing import Optional, Dict, Any, Literal


class EnsureProfileRequest(BaseModel):
    timezone: Optional[str] = Field(default=None, description="IANA timezone name, e.g. America/New_York")


class ProfileResponse(BaseModel):
    user_id: UUID
    entitlement_status: str
    timezone: Optional[str] = None
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    current_week_number: Optional[int] = None
    next_week_due_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class StartTrialRequest(BaseModel):
    timezone: Optional[str] = Field(default=None, description="IANA timezone name; UTC when omitted")


class StartTrialResponse(ProfileResponse):
    success: bool = True


class EntitlementResponse(BaseModel):
    """Entitlement read: status, cadence and derived preferences."""
    entitlement_status: str
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    current_week_number: Optional[int] = None
    next_week_due_at: Optional[datetime] = None
    is_week_due: bool = False
    timezone: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None
    measurement_prefs: Optional[Dict[str, str]] = None
    smoking_prefs: Optional[Dict[str, bool]] = None
    fetched_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckinSubmission(BaseModel):
    checkin_id: UUID
    week_number: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime


class CheckinCompletionResponse(BaseModel):
    score: float
    potential: Optional[float] = None
    model_version: str
    generated_at: datetime
    next_due_at: datetime
    reused: bool
    current_week_number: int

    model_config = ConfigDict(from_attributes=True)


class EstimateRequest(BaseModel):
    source: Literal["intake", "recalc"]
    payload: Dict[str, Any] = Field(default_factory=dict)


class EstimateResponse(BaseModel):
    source: str
    score: float
    potential: Optional[float] = None
    model_version: str
    generated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckoutRequest(BaseModel):
    billing_period: Literal["annual", "monthly"] = "annual"
    referral_code: Optional[str] = Field(default=None, max_length=64)


class RedirectUrlResponse(BaseModel):
    url: str
