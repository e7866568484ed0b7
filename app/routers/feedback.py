# app/routers/feedback.py
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.orm import Session

from app.deps import get_db, get_current_user
from app.models.user import User
from app.services import feedback_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/feedback",
    tags=["feedback"],
)


class FeedbackSubmitIn(BaseModel):
    session_code: str = Field(min_length=1, validation_alias=AliasChoices("sessionCode", "session_code"))
    comment: str = ""
    criteria_scores: List[Dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices("criteriaScores", "criteria_scores")
    )
    request_new_case: bool = Field(False, validation_alias=AliasChoices("requestNewCase", "request_new_case"))
    request_role_change: bool = Field(
        False, validation_alias=AliasChoices("requestRoleChange", "request_role_change")
    )


@router.post("/submit")
def submit_feedback(
    body: FeedbackSubmitIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    피드백 제출.
    - 받는 사람은 항상 세션의 DOCTOR
    - requestNewCase 면 바로 다음 케이스, 아니면 환자/관찰자 모두 제출 후 자동 진행
    """
    return feedback_service.submit_feedback(
        db,
        body.session_code.strip(),
        user,
        body.comment,
        body.criteria_scores,
        request_new_case=body.request_new_case,
        request_role_change=body.request_role_change,
    )


@router.get("/received")
def received_feedback(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return feedback_service.received_feedback(db, user)


@router.get("/session/{code}")
def session_feedback(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return feedback_service.session_feedback(db, code, user)
