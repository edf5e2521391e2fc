"""
Weekly check-in submission.

Retries are expected (mobile networks): the same ``checkin_id`` can be posted
any number of times and always returns the first completion's score, with
``reused`` telling the client which case it hit.
"""
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user_id
from core.clock import Clock
from core.database import get_db
from core.dependencies import get_clock, get_policy, get_scorer
from schemas import CheckinCompletionResponse, CheckinSubmission
from services.checkin_orchestrator import complete_checkin
from services.scheduler import CadencePolicy
from services.scoring import Scorer

router = APIRouter(prefix="/v1/checkins", tags=["checkins"])


@router.post("/weekly", response_model=CheckinCompletionResponse)
def submit_weekly_checkin(
    submission: CheckinSubmission,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    scorer: Scorer = Depends(get_scorer),
    policy: CadencePolicy = Depends(get_policy),
):
    completion = complete_checkin(
        db,
        user_id=user_id,
        checkin_id=submission.checkin_id,
        week_number=submission.week_number,
        payload=submission.payload,
        completed_at=submission.completed_at,
        now=clock.now(),
        scorer=scorer,
        policy=policy,
    )
    return CheckinCompletionResponse.model_validate(completion)
