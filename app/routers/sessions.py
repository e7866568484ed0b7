# app/routers/sessions.py
import logging
import math

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.orm import Session

from app.db.base import epoch_millis
from app.deps import get_db, get_current_user
from app.errors import PermissionDeniedError, SessionError
from app.models.sessions import ParticipantRole, SessionPhase, SessionType, TimingType
from app.models.user import User
from app.services import session_service as ss
from app.services import feedback_service
from app.services.case_selection import SelectionOutcome, select_case_for_topic, select_next_case
from app.services.feedback_service import RECALL_COMPLETE_MESSAGE
from app.services.session_service import SessionConfig, parse_date, parse_enum
from app.services.session_timer import timer_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

TOPICS_COMPLETE_MESSAGE = "Congratulations! You have completed all available cases in this session."

# ---------- Schemas ----------
class SessionConfigIn(BaseModel):
    session_type: str | None = Field(None, validation_alias=AliasChoices("sessionType", "session_type"))
    reading_time: float | None = Field(
        None, validation_alias=AliasChoices("readingTime", "readingTimeMinutes", "reading_time"))
    consultation_time: float | None = Field(
        None, validation_alias=AliasChoices("consultationTime", "consultationTimeMinutes", "consultation_time"))
    timing_type: str | None = Field(None, validation_alias=AliasChoices("timingType", "timing_type"))
    selected_topics: list[str] | None = Field(
        None, validation_alias=AliasChoices("selectedTopics", "selected_topics"))
    recall_start_date: str | None = Field(
        None, validation_alias=AliasChoices("recallStartDate", "recall_start_date"))
    recall_end_date: str | None = Field(None, validation_alias=AliasChoices("recallEndDate", "recall_end_date"))
    recall_date: str | None = Field(None, validation_alias=AliasChoices("recallDate", "recall_date"))

    def to_config(self) -> SessionConfig:
        start = parse_date(self.recall_start_date)
        end = parse_date(self.recall_end_date)
        single = parse_date(self.recall_date)
        if single is not None and (start is None or end is None):
            # 단일 날짜는 [d, d] 범위로 저장
            start = end = single
        return SessionConfig(
            session_type=parse_enum(SessionType, self.session_type, "session type"),
            reading_time=_minutes(self.reading_time),
            consultation_time=_minutes(self.consultation_time),
            timing_type=parse_enum(TimingType, self.timing_type, "timing type"),
            selected_topics=self.selected_topics,
            recall_start_date=start,
            recall_end_date=end,
        )

class CreateSessionIn(SessionConfigIn):
    title: str | None = None

class JoinIn(BaseModel):
    code: str = Field(min_length=1)

class JoinWithRoleIn(BaseModel):
    role: str = Field(min_length=1)

class SelectTopicIn(BaseModel):
    topic: str = Field(min_length=1)

# ---------- Helpers ----------
def _minutes(value: float | None) -> int | None:
    if value is None:
        return None
    return int(math.floor(value + 0.5))

def _require_doctor(session, user: User, action: str) -> None:
    if ss.get_user_role_in_session(session, user) != ParticipantRole.DOCTOR:
        raise PermissionDeniedError(f"Only the doctor can {action}")

def _leave_other_sessions(db: Session, code: str | None, user: User) -> int:
    left_codes = [s.code for s in ss.leave_other_active_sessions(db, code, user)]
    db.commit()
    for left_code in left_codes:
        timer_service.handle_user_leave(db, left_code, user.id)
    return len(left_codes)

def _role_value(role):
    return role.value if role is not None else None

# ---------- Endpoints ----------
@router.post("")
def create_session(
    body: CreateSessionIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    session = ss.create_session(db, user, body.title, body.to_config())
    code = session.code
    left = _leave_other_sessions(db, code, user)
    timer_service.track_user_activity(code, user.id)
    return {"sessionCode": code, "session": ss.session_summary(session), "leftFromSessions": left}

@router.post("/join")
def find_session_to_join(
    body: JoinIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    session = ss.find_by_code(db, body.code.strip())
    if session is None:
        raise SessionError("Invalid session code", status_code=404)
    return {
        "sessionCode": session.code,
        "title": session.title,
        "availableRoles": ss.get_available_roles(session),
        "participants": ss.participant_details(session),
        "userRole": _role_value(ss.get_user_role_in_session(session, user)),
        "isHost": ss.is_user_host(session, user),
    }

@router.get("/active")
def active_sessions(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [ss.session_list_item(s) for s in ss.active_sessions(db)]

@router.get("/user/active")
def user_active_sessions(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    result = []
    for s in ss.user_active_sessions(db, user):
        item = ss.session_list_item(s)
        item["userRole"] = _role_value(ss.get_user_role_in_session(s, user))
        item["isHost"] = ss.is_user_host(s, user)
        result.append(item)
    return result

@router.get("/history")
def session_history(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    result = []
    for s in ss.user_history(db, user):
        item = ss.session_list_item(s)
        participant = ss.get_participant(s, user.id)
        item["userRole"] = _role_value(participant.role if participant else None)
        item["isHost"] = ss.is_user_host(s, user)
        item["rounds"] = s.current_round
        result.append(item)
    return result

@router.post("/{code}/join-with-role")
def join_with_role(
    code: str,
    body: JoinWithRoleIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ss.get_by_code(db, code)
    left = _leave_other_sessions(db, code, user)
    participant = ss.join_with_role(db, code, body.role, user)
    role = participant.role

    timer_service.track_user_activity(code, user.id)
    timer_service.broadcast_participant_update(db, code)
    timer_service.broadcast_session_update(db, code)

    session = ss.get_by_code(db, code)
    return {
        "session": ss.session_summary(session),
        "participants": ss.participant_details(session),
        "message": f"Successfully joined session with role: {role.value}",
        "userRole": role.value,
        "isHost": ss.is_user_host(session, user),
        "leftFromSessions": left,
    }

@router.post("/{code}/configure")
def configure_session(
    code: str,
    body: SessionConfigIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    session = ss.configure_session(db, code, user, body.to_config())
    db.commit()
    timer_service.broadcast_session_update(db, code)
    return {
        "session": ss.session_summary(session),
        "participants": ss.participant_details(session),
        "message": "Session configured successfully",
    }

@router.post("/{code}/start")
def start_session(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    timer_service.start_session(db, code, user)
    return {"message": "Session started", "phase": SessionPhase.READING.value}

@router.post("/{code}/skip-phase")
def skip_phase(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    next_phase = timer_service.skip_phase(db, code, user)
    return {"message": "Phase skipped successfully", "phase": next_phase.value}

@router.post("/{code}/new-case")
def new_case(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    session = ss.get_by_code(db, code)
    _require_doctor(session, user, "request a new case")
    ss.require_not_ended(session)

    # 1) 현재 케이스를 사용 처리하고 다음 케이스 선택
    selection = select_next_case(db, session)
    if selection.outcome == SelectionOutcome.SELECTED:
        timer_service.start_case(db, code, selection.case)
        return {"message": "New case started", "newCaseStarted": True, "currentRound": session.current_round}

    db.commit()

    # 2) 토픽 소진 -> 다른 토픽 선택 안내
    if selection.outcome == SelectionOutcome.TOPIC_EXHAUSTED:
        timer_service.broadcast_topic_selection_needed(code, selection.completed_topic, selection.available_topics)
        return {
            "noMoreCases": True,
            "currentTopic": selection.completed_topic,
            "availableTopics": selection.available_topics,
            "message": f"Congratulations! You have completed all cases in {selection.completed_topic}. "
                       f"Choose a new topic to continue:",
        }

    # 3) 남은 케이스 없음 -> 세션 종료
    message = RECALL_COMPLETE_MESSAGE if session.session_type == SessionType.RECALL else TOPICS_COMPLETE_MESSAGE
    timer_service.end_session(db, code, message)
    return {"sessionCompleted": True, "message": message}

@router.post("/{code}/select-new-topic")
def select_new_topic(
    code: str,
    body: SelectTopicIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    session = ss.get_by_code(db, code)
    _require_doctor(session, user, "select a new topic")
    ss.require_not_ended(session)

    topic = body.topic.strip()
    case = select_case_for_topic(db, session, topic)
    topics = list(session.selected_topics or [])
    if topic not in topics:
        session.selected_topics = topics + [topic]

    timer_service.start_case(db, code, case)
    return {"message": f"New topic selected: {topic}", "topic": topic, "newCaseStarted": True}

@router.post("/{code}/complete")
def complete_session(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    session = ss.get_by_code(db, code)

    # 피드백 단계: 각자 완료 처리, 전원 완료 시 종료
    if session.phase == SessionPhase.FEEDBACK:
        participant = ss.require_participant(session, user)
        if participant.has_completed:
            return {"message": "You have already completed your session", "alreadyCompleted": True}

        participant.has_completed = True
        db.commit()
        timer_service.broadcast_participant_update(db, code)
        if ss.are_all_users_completed(session):
            timer_service.end_session(db, code, "All participants have completed their sessions")
        return {"message": "Your session has been completed successfully", "completed": True}

    # 그 외 단계: 호스트만 세션 전체 종료 가능
    if not ss.is_user_host(session, user):
        raise SessionError("Only the session host can complete the session outside of feedback phase")
    timer_service.end_session(db, code, "Session completed by host")
    return {"message": "Session completed successfully"}

@router.post("/{code}/leave")
def leave_session(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    ss.get_by_code(db, code)
    timer_service.stop_user_activity_tracking(code, user.id)
    timer_service.handle_user_leave(db, code, user.id)
    return {"message": "Successfully left session"}

@router.post("/{code}/end")
def end_session(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    session = ss.get_by_code(db, code)
    _require_doctor(session, user, "end the session")
    timer_service.end_session(db, code, "Session has been ended by the doctor.")
    return {"message": "Session ended successfully"}

@router.post("/{code}/activity")
def record_activity(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    session = ss.get_by_code(db, code)
    if ss.get_user_role_in_session(session, user) is None:
        raise SessionError("You are not a participant in this session")
    timer_service.track_user_activity(code, user.id)
    return {"ok": True, "serverTimestamp": epoch_millis()}

@router.get("/{code}/observer-feedback-status")
def observer_feedback_status(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return feedback_service.observer_feedback_status(db, code, user)

@router.get("/{code}")
def get_session(code: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    session = ss.get_by_code(db, code)
    ss.update_session_timer_info(session)

    role = ss.get_user_role_in_session(session, user)
    participant = ss.get_participant(session, user.id)
    # 참가 이력이 없는 사용자에게는 케이스 본문을 주지 않는다
    case_role = participant.role if participant is not None else None
    selected_case = ss.case_payload_for_role(session.selected_case, case_role) if participant else None

    response = ss.session_summary(session)
    response.update({
        "totalTime": ss.phase_duration_seconds(session),
        "userRole": _role_value(role),
        "isHost": ss.is_user_host(session, user),
        "selectedCase": selected_case,
        "participants": ss.participant_details(session),
        "serverTimestamp": epoch_millis(),
    })

    if role is not None:
        timer_service.track_user_activity(code, user.id)
        timer_service.broadcast_participant_update(db, code)
    return response
