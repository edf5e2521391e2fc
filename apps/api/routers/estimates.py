from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.clock import Clock
from core.database import get_db
from core.dependencies import get_clock, get_scorer
from schemas import EstimateRequest, EstimateResponse
from services.estimates import submit_estimate
from services.scoring import Scorer

router = APIRouter(prefix="/v1/estimates", tags=["estimates"])


@router.post("", response_model=EstimateResponse)
def create_estimate(
    request: EstimateRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    scorer: Scorer = Depends(get_scorer),
):
    """Score an intake submission or a recalculation. Weekly scores go through /v1/checkins/weekly."""
    result = submit_estimate(
        db,
        user_id=user_id,
        source=request.source,
        payload=request.payload,
        now=clock.now(),
        scorer=scorer,
    )
    return EstimateResponse.model_validate(result)
