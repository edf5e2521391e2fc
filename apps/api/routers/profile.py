from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.clock import Clock
from core.database import get_db
from core.dependencies import get_clock
from schemas import EnsureProfileRequest, EntitlementResponse, ProfileResponse
from services.entitlement_snapshot import get_entitlement_snapshot
from services.profile_service import delete_profile, ensure_profile

router = APIRouter(prefix="/v1", tags=["profile"])


@router.post("/profile/ensure", response_model=ProfileResponse)
def ensure(
    request: EnsureProfileRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Create the caller's profile if missing; optionally store their timezone."""
    profile = ensure_profile(db, user_id, timezone_name=request.timezone)
    return ProfileResponse.model_validate(profile)


@router.get("/entitlement", response_model=EntitlementResponse)
def get_entitlement(
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Current entitlement, cadence and derived preferences.

    Read-only for the caller; may persist a preference backfill on the side.
    """
    snapshot = get_entitlement_snapshot(db, user_id, now=clock.now())
    return EntitlementResponse.model_validate(snapshot)


@router.delete("/profile", status_code=status.HTTP_204_NO_CONTENT)
def delete(
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Account deletion. Idempotent: deleting a missing profile is not an error."""
    delete_profile(db, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
