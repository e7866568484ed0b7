# app/services/feedback_service.py
import logging
import math
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.errors import SessionError
from app.models.cases import Case
from app.models.feedback import Feedback
from app.models.sessions import PracticeSession, ParticipantRole, SessionType, SessionStatus
from app.models.user import User
from app.services import session_service as ss
from app.services.case_selection import SelectionOutcome, mark_case_used, select_next_case
from app.services.session_timer import timer_service

logger = logging.getLogger(__name__)

RECALL_COMPLETE_MESSAGE = (
    "Congratulations! You have completed all available cases in the selected recall date range."
)


def _to_float(value):
    """str / int / float -> float 로 변환 (실패 시 None)"""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# (1) 점수 계산

def calculate_overall_performance(criteria_scores: List[Dict[str, Any]]) -> Optional[float]:
    """
    주 평가항목 점수의 합.
    항목에 score 가 없으면 subScores 평균을 쓰고, 둘 다 없으면 건너뛴다.
    """
    total = 0.0
    counted = 0
    for criterion in criteria_scores or []:
        score = _to_float(criterion.get("score"))
        if score is None:
            subs = [_to_float(s.get("score")) for s in criterion.get("subScores") or []]
            subs = [s for s in subs if s is not None]
            if not subs:
                continue
            score = sum(subs) / len(subs)
        total += score
        counted += 1
    return total if counted else None


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def create_feedback(db: Session, session: PracticeSession, sender: User, recipient: User,
                    comment: str, criteria_scores: List[Dict[str, Any]]) -> Feedback:
    overall = calculate_overall_performance(criteria_scores)
    feedback = Feedback(
        session_id=session.id,
        sender_id=sender.id,
        recipient_id=recipient.id,
        case_id=session.selected_case_id,
        round_number=session.current_round or 1,
        comment=comment,
        criteria_scores=criteria_scores or [],
        overall_performance=overall,
        score=round_half_up(overall) if overall is not None else 0,
    )
    db.add(feedback)
    db.flush()
    return feedback


# (2) 제출 + 다음 케이스 진행

def submit_feedback(db: Session, code: str, sender: User, comment: str,
                    criteria_scores: List[Dict[str, Any]],
                    request_new_case: bool = False, request_role_change: bool = False) -> Dict[str, Any]:
    session = ss.get_by_code(db, code)
    ss.require_participant(session, sender)
    ss.require_not_ended(session)

    doctors = ss.participants_with_role(session, ParticipantRole.DOCTOR, active_only=False)
    if not doctors:
        raise SessionError("No doctor found in this session")
    recipient = doctors[0].user

    feedback = create_feedback(db, session, sender, recipient, comment, criteria_scores)
    feedback_id = feedback.id

    mark_case_used(session, session.selected_case_id)
    ss.mark_user_feedback_given(session, sender)
    ss.mark_user_completed(session, sender)
    db.commit()
    logger.info("[FEEDBACK] %s round=%s sender=%s score=%s", code, feedback.round_number, sender.id, feedback.score)

    timer_service.broadcast_participant_update(db, code)

    if request_new_case:
        started = start_next_case(db, session, swap_roles=request_role_change)
    else:
        started = _start_next_case_when_round_done(db, session)

    if not started and session.status != SessionStatus.COMPLETED and ss.are_all_users_completed(session):
        timer_service.end_session(db, code, "All participants have completed their sessions")

    response = {"message": "Feedback submitted successfully", "feedbackId": feedback_id}
    if started:
        response["newCaseStarted"] = True
    return response


def _start_next_case_when_round_done(db: Session, session: PracticeSession) -> bool:
    # 환자 + 관찰자 모두 이번 라운드 피드백을 냈으면 자동으로 다음 케이스
    patient_done = ss.has_role_given_feedback(db, session, ParticipantRole.PATIENT)
    observer_done = ss.has_role_given_feedback(db, session, ParticipantRole.OBSERVER)
    if not (patient_done and observer_done):
        return False
    return start_next_case(db, session)


def start_next_case(db: Session, session: PracticeSession, swap_roles: bool = False) -> bool:
    code = session.code
    try:
        selection = select_next_case(db, session)
    except SessionError as exc:
        logger.info("[FEEDBACK] no next case for %s: %s", code, exc.message)
        return False

    if selection.outcome != SelectionOutcome.SELECTED:
        db.commit()  # 현재 케이스 사용 기록은 남긴다
        if selection.outcome == SelectionOutcome.TOPIC_EXHAUSTED:
            timer_service.broadcast_topic_selection_needed(
                code, selection.completed_topic, selection.available_topics
            )
        elif session.session_type == SessionType.RECALL:
            # 기출 범위 소진 -> 세션 종료
            timer_service.end_session(db, code, RECALL_COMPLETE_MESSAGE)
        return False

    if swap_roles:
        swap_doctor_and_patient(db, session)
    timer_service.start_case(db, code, selection.case)
    return True


def swap_doctor_and_patient(db: Session, session: PracticeSession) -> bool:
    doctors = ss.participants_with_role(session, ParticipantRole.DOCTOR)
    patients = ss.participants_with_role(session, ParticipantRole.PATIENT)
    if not doctors or not patients:
        return False

    doctor, patient = doctors[0], patients[0]
    doctor.role = ParticipantRole.PATIENT
    patient.role = ParticipantRole.DOCTOR
    doctor_name, patient_name = doctor.user.name, patient.user.name
    db.commit()

    logger.info("[FEEDBACK] %s roles swapped doctor=%s patient=%s", session.code, patient.user_id, doctor.user_id)
    timer_service.broadcast_role_change(
        db, session.code,
        f"Roles have been swapped: {doctor_name} is now Patient, {patient_name} is now Doctor",
    )
    return True


# (3) 조회

def _participant_role(session: PracticeSession, user_id: int) -> str:
    participant = ss.get_participant(session, user_id)
    return participant.role.value.lower() if participant else "unknown"


def _feedback_item(db: Session, fb: Feedback) -> Dict[str, Any]:
    item = {
        "id": fb.id,
        "fromUser": fb.sender.name,
        "fromUserEmail": fb.sender.email,
        "toUser": fb.recipient.name,
        "toUserEmail": fb.recipient.email,
        "comment": fb.comment,
        "overallPerformance": fb.overall_performance,
        "score": fb.score,
        "criteriaScores": fb.criteria_scores or [],
        "roundNumber": fb.round_number,
        "timestamp": fb.created_at.isoformat() if fb.created_at else None,
        "caseId": fb.case_id,
        "caseTitle": None,
        "category": None,
    }
    case = db.get(Case, fb.case_id) if fb.case_id is not None else None
    if case is not None:
        item["caseTitle"] = case.title
        item["category"] = case.category.name if case.category else None
    elif fb.case_id is not None:
        item["caseTitle"] = f"Case not found (ID: {fb.case_id})"
    return item


def received_feedback(db: Session, user: User) -> List[Dict[str, Any]]:
    rows = (
        db.query(Feedback)
        .filter(Feedback.recipient_id == user.id)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
        .all()
    )
    result = []
    for fb in rows:
        item = _feedback_item(db, fb)
        item.update({
            "sessionId": fb.session.id,
            "sessionCode": fb.session.code,
            "sessionTitle": fb.session.title,
            "fromUserRole": _participant_role(fb.session, fb.sender_id),
        })
        result.append(item)
    return result


def session_feedback(db: Session, code: str, user: User) -> List[Dict[str, Any]]:
    session = ss.get_by_code(db, code)
    if ss.get_participant(session, user.id) is None:
        raise SessionError("You were not a participant in this session")
    rows = (
        db.query(Feedback)
        .filter(Feedback.session_id == session.id)
        .order_by(Feedback.created_at.asc(), Feedback.id.asc())
        .all()
    )
    result = []
    for fb in rows:
        item = _feedback_item(db, fb)
        item["fromUserRole"] = _participant_role(session, fb.sender_id)
        result.append(item)
    return result


def observer_feedback_status(db: Session, code: str, user: User) -> Dict[str, Any]:
    session = ss.get_by_code(db, code)
    if ss.get_participant(session, user.id) is None:
        raise SessionError("You are not a participant in this session")

    observers = ss.participants_with_role(session, ParticipantRole.OBSERVER)
    if not observers:
        # 관찰자가 없으면 기다릴 필요 없음
        return {"hasObserver": False, "observerHasGivenFeedback": True, "observerCount": 0}

    given = any(ss.has_user_given_feedback_for_current_round(db, session, o.user_id) for o in observers)
    return {"hasObserver": True, "observerHasGivenFeedback": given, "observerCount": len(observers)}
