# app/routers/cases.py
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.orm import Session

from app.deps import get_db, get_current_user, require_admin
from app.models.cases import Case, Category, Difficulty
from app.models.user import User
from app.services.case_selection import candidate_recall_cases
from app.services.session_service import case_payload, parse_date

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cases", tags=["cases"])


class CaseIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    category_id: int = Field(validation_alias=AliasChoices("categoryId", "category_id"))
    scenario: Optional[str] = None
    doctor_notes: Optional[str] = Field(None, validation_alias=AliasChoices("doctorNotes", "doctor_notes"))
    patient_notes: Optional[str] = Field(None, validation_alias=AliasChoices("patientNotes", "patient_notes"))
    observer_notes: Optional[str] = Field(None, validation_alias=AliasChoices("observerNotes", "observer_notes"))
    learning_objectives: Optional[str] = Field(
        None, validation_alias=AliasChoices("learningObjectives", "learning_objectives"))
    doctor_sections: List[Dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices("doctorSections", "doctor_sections"))
    patient_sections: List[Dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices("patientSections", "patient_sections"))
    feedback_criteria: List[Dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices("feedbackCriteria", "feedback_criteria"))
    difficulty: Difficulty = Difficulty.INTERMEDIATE
    duration: int = Field(15, ge=1)
    image_url: Optional[str] = Field(None, validation_alias=AliasChoices("imageUrl", "image_url"))
    recall_dates: List[str] = Field(default_factory=list, validation_alias=AliasChoices("recallDates", "recall_dates"))


@router.get("")
def list_cases(
    category_id: Optional[int] = Query(None, alias="categoryId"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    q = db.query(Case)
    if category_id is not None:
        q = q.filter(Case.category_id == category_id)
    return [case_payload(c) for c in q.order_by(Case.id.asc()).all()]


# 기출 날짜 조회 (/{case_id} 보다 먼저 등록해야 함)
@router.get("/recall/dates")
def list_recall_dates(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    recall_cases = db.query(Case).filter(Case.is_recall_case.is_(True)).all()
    return sorted({str(d) for c in recall_cases for d in (c.recall_dates or [])})


@router.get("/recall/by-date-range")
def list_recall_cases_in_range(
    start_date: str = Query(..., alias="startDate"),
    end_date: str = Query(..., alias="endDate"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    start, end = parse_date(start_date), parse_date(end_date)
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")
    return [case_payload(c) for c in candidate_recall_cases(db, start, end)]


@router.get("/{case_id}")
def get_case(case_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    case = db.get(Case, case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return case_payload(case)


@router.post("", status_code=201)
def create_case(body: CaseIn, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    category = db.get(Category, body.category_id)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")

    # 기출일은 YYYY-MM-DD 로 정규화, 잘못된 값은 버린다
    recall_dates = sorted({d.isoformat() for d in map(parse_date, body.recall_dates) if d is not None})

    case = Case(
        title=body.title.strip(),
        description=body.description,
        category=category,
        scenario=body.scenario,
        doctor_notes=body.doctor_notes,
        patient_notes=body.patient_notes,
        observer_notes=body.observer_notes,
        learning_objectives=body.learning_objectives,
        doctor_sections=body.doctor_sections,
        patient_sections=body.patient_sections,
        feedback_criteria=body.feedback_criteria,
        difficulty=body.difficulty,
        duration=body.duration,
        image_url=body.image_url,
        is_recall_case=bool(recall_dates),
        recall_dates=recall_dates,
    )
    db.add(case)
    db.flush()
    logger.info("[CASE] created id=%s category=%s by admin=%s", case.id, category.name, admin.id)
    return case_payload(case)
