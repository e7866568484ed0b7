# app/services/session_service.py
"""
세션 생성/참가/역할/설정/완료 상태 관리.

브로드캐스트와 타이머는 session_timer 가 담당하고, 이 모듈은 DB 상태만 다룬다.
모든 함수는 호출자가 넘긴 SQLAlchemy 세션을 사용한다 (커밋은 호출자 책임, 역할 선점만 예외).
"""
import logging
import random
import threading
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.orm import Session

from app.db.base import utcnow
from app.errors import SessionError, NotFoundError, PermissionDeniedError
from app.models.cases import Case
from app.models.feedback import Feedback
from app.models.sessions import (
    PracticeSession, SessionParticipant, SessionStatus, SessionPhase, SessionType, TimingType,
    ParticipantRole,
)
from app.models.user import User
from app.services.case_selection import RANDOM_TOPIC, mark_case_used, select_initial_case

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "PLAB 2 Practice Session"
ACTIVE_STATUSES = (SessionStatus.CREATED, SessionStatus.IN_PROGRESS)
ENDED_STATUSES = (SessionStatus.COMPLETED, SessionStatus.CANCELLED)


# ----------------------------
# 세션 코드별 락 (역할 선점, 타이머 시작/만료/스킵 직렬화)
# ----------------------------
class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def __call__(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


session_lock = KeyedLocks()


@dataclass
class SessionConfig:
    """None 인 필드는 기존 값을 유지한다."""
    session_type: SessionType | None = None
    reading_time: int | None = None
    consultation_time: int | None = None
    timing_type: TimingType | None = None
    selected_topics: list[str] | None = None
    recall_start_date: date | None = None
    recall_end_date: date | None = None


def parse_enum(enum_cls, value, label: str):
    if value is None:
        return None
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise SessionError(f"Invalid {label}: {value}. Allowed: [{allowed}]")


def parse_date(value) -> date | None:
    """YYYY-MM-DD. 형식이 틀리면 경고만 남기고 무시."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logger.warning("[SESSION] ignoring invalid date %r", value)
        return None


# ----------------------------
# 조회
# ----------------------------
def find_by_code(db: Session, code: str) -> PracticeSession | None:
    return db.query(PracticeSession).filter(PracticeSession.code == code).first()


def get_by_code(db: Session, code: str) -> PracticeSession:
    session = find_by_code(db, code)
    if session is None:
        raise NotFoundError("Session not found")
    return session


def get_participant(session: PracticeSession, user_id: int) -> SessionParticipant | None:
    for p in session.participants:
        if p.user_id == user_id:
            return p
    return None


def require_participant(session: PracticeSession, user: User) -> SessionParticipant:
    participant = get_participant(session, user.id)
    if participant is None:
        raise SessionError("User is not a participant in this session")
    return participant


def require_not_ended(session: PracticeSession) -> None:
    if session.status in ENDED_STATUSES:
        raise SessionError("Session has already ended")


def active_participants(session: PracticeSession) -> list[SessionParticipant]:
    return [p for p in session.participants if p.is_active]


def participants_with_role(session: PracticeSession, role: ParticipantRole, active_only: bool = True):
    return [p for p in session.participants if p.role == role and (p.is_active or not active_only)]


def get_user_role_in_session(session: PracticeSession, user: User) -> ParticipantRole | None:
    participant = get_participant(session, user.id)
    if participant is None or not participant.is_active:
        return None
    return participant.role


def is_user_host(session: PracticeSession, user: User) -> bool:
    if session.created_by is not None:
        return session.created_by == user.id

    # 생성자 정보가 없는 세션: 닥터 -> 최초 참가자 순으로 판단
    participant = get_participant(session, user.id)
    if participant is not None and participant.role == ParticipantRole.DOCTOR:
        return True
    if session.participants:
        first = min(session.participants, key=lambda p: p.id or 0)
        return first.user_id == user.id
    return False


def get_available_roles(session: PracticeSession) -> list[str]:
    # DOCTOR 는 항상 호스트 몫이라 목록에 없다
    roles = []
    if not participants_with_role(session, ParticipantRole.PATIENT):
        roles.append(ParticipantRole.PATIENT.value)
    roles.append(ParticipantRole.OBSERVER.value)
    return roles


def active_sessions(db: Session) -> list[PracticeSession]:
    return (
        db.query(PracticeSession)
        .filter(PracticeSession.status.in_(ACTIVE_STATUSES))
        .order_by(PracticeSession.created_at.desc(), PracticeSession.id.desc())
        .all()
    )


def user_active_sessions(db: Session, user: User) -> list[PracticeSession]:
    return (
        db.query(PracticeSession)
        .join(SessionParticipant, SessionParticipant.session_id == PracticeSession.id)
        .filter(
            SessionParticipant.user_id == user.id,
            SessionParticipant.is_active.is_(True),
            PracticeSession.status.in_(ACTIVE_STATUSES),
        )
        .order_by(PracticeSession.created_at.desc(), PracticeSession.id.desc())
        .all()
    )


def user_history(db: Session, user: User) -> list[PracticeSession]:
    """참여했던 세션 중 끝난 것 (최신순)."""
    return (
        db.query(PracticeSession)
        .join(SessionParticipant, SessionParticipant.session_id == PracticeSession.id)
        .filter(
            SessionParticipant.user_id == user.id,
            PracticeSession.status.in_(ENDED_STATUSES),
        )
        .order_by(PracticeSession.end_time.desc(), PracticeSession.id.desc())
        .all()
    )


# ----------------------------
# 생성 / 참가
# ----------------------------
def generate_code(db: Session, rng=random) -> str:
    while True:
        code = "%06d" % rng.randint(0, 999999)
        if find_by_code(db, code) is None:
            return code


def apply_config(session: PracticeSession, config: SessionConfig) -> None:
    if config.session_type is not None:
        session.session_type = config.session_type
    if config.reading_time is not None:
        if config.reading_time < 0:
            raise SessionError("Reading time must not be negative")
        session.reading_time = config.reading_time
    if config.consultation_time is not None:
        if config.consultation_time < 0:
            raise SessionError("Consultation time must not be negative")
        session.consultation_time = config.consultation_time
    if config.timing_type is not None:
        session.timing_type = config.timing_type
    if config.selected_topics is not None:
        session.selected_topics = list(config.selected_topics) or [RANDOM_TOPIC]
    if config.recall_start_date is not None:
        session.recall_start_date = config.recall_start_date
    if config.recall_end_date is not None:
        session.recall_end_date = config.recall_end_date


def create_session(db: Session, creator: User, title: str | None, config: SessionConfig) -> PracticeSession:
    session = PracticeSession(
        title=(title or "").strip() or DEFAULT_TITLE,
        code=generate_code(db),
        status=SessionStatus.CREATED,
        phase=SessionPhase.WAITING,
        session_type=SessionType.TOPIC,
        reading_time=2,
        consultation_time=8,
        timing_type=TimingType.COUNTDOWN,
        selected_topics=[RANDOM_TOPIC],
        used_case_ids=[],
        current_round=1,
        created_by=creator.id,
    )
    apply_config(session, config)
    db.add(session)

    # 호스트는 항상 닥터
    db.add(SessionParticipant(
        session=session, user=creator, role=ParticipantRole.DOCTOR,
        is_active=True, has_completed=False, has_given_feedback=False,
    ))
    db.flush()
    logger.info("[SESSION] created %s by user=%s type=%s", session.code, creator.id, session.session_type.value)
    return session


def join_with_role(db: Session, code: str, role_name: str, user: User) -> SessionParticipant:
    role = parse_enum(ParticipantRole, role_name, "role")

    # 같은 세션에 대한 역할 선점은 직렬화 (PATIENT 중복 방지)
    with session_lock(code):
        session = get_by_code(db, code)
        db.refresh(session)  # 다른 요청이 먼저 커밋한 참가자까지 다시 읽기
        require_not_ended(session)

        is_host = is_user_host(session, user)
        if role == ParticipantRole.DOCTOR and not is_host:
            raise SessionError("Only the session host can take the DOCTOR role")

        available = get_available_roles(session)
        participant = get_participant(session, user.id)
        if participant is not None:
            # 재참가: 활성화하고 가능한 경우에만 역할 변경
            participant.is_active = True
            if participant.role != role and (role.value in available or is_host):
                participant.role = role
        else:
            if role != ParticipantRole.OBSERVER and role.value not in available:
                raise SessionError(
                    f"Role '{role.value}' is not available. Available roles: [{', '.join(available)}]"
                )
            participant = SessionParticipant(
                session=session, user=user, role=role,
                is_active=True, has_completed=False, has_given_feedback=False,
            )
            db.add(participant)

        db.commit()
        logger.info("[SESSION] user=%s joined %s as %s", user.id, code, participant.role.value)
        return participant


def leave_other_active_sessions(db: Session, current_code: str | None, user: User) -> list[PracticeSession]:
    """다른 진행중 세션의 참가 상태를 비활성화하고 해당 세션 목록을 돌려준다."""
    rows = (
        db.query(SessionParticipant)
        .join(PracticeSession, SessionParticipant.session_id == PracticeSession.id)
        .filter(
            SessionParticipant.user_id == user.id,
            SessionParticipant.is_active.is_(True),
            PracticeSession.status.in_(ACTIVE_STATUSES),
        )
        .all()
    )
    left = []
    for participant in rows:
        if participant.session.code == current_code:
            continue
        participant.is_active = False
        left.append(participant.session)
    if left:
        db.flush()
        logger.info("[SESSION] user=%s left %d other sessions", user.id, len(left))
    return left


def configure_session(db: Session, code: str, user: User, config: SessionConfig) -> PracticeSession:
    session = get_by_code(db, code)
    if not is_user_host(session, user):
        raise PermissionDeniedError("Only the host can configure the session")
    require_not_ended(session)

    apply_config(session, config)

    if session.selected_case is None:
        case = select_initial_case(db, session)
        if case is None:
            if session.session_type == SessionType.RECALL:
                raise SessionError("No recall cases available for the selected dates")
            raise SessionError("No cases available for the selected topics")
        session.selected_case = case

    mark_case_used(session, session.selected_case.id)
    session.phase = SessionPhase.WAITING
    db.flush()
    logger.info("[SESSION] configured %s case=%s", code, session.selected_case.id)
    return session


# ----------------------------
# 타이머 정보
# ----------------------------
def phase_duration_seconds(session: PracticeSession, phase: SessionPhase | None = None) -> int:
    phase = phase or session.phase
    if phase == SessionPhase.READING:
        return session.reading_time * 60
    if phase == SessionPhase.CONSULTATION:
        return session.consultation_time * 60
    return 0


def start_phase(session: PracticeSession, phase: SessionPhase) -> None:
    session.phase = phase
    session.phase_start_time = utcnow()
    session.timer_start_timestamp = None
    session.time_remaining = phase_duration_seconds(session, phase)


def calculate_remaining_time(session: PracticeSession, now: datetime | None = None) -> int:
    if session.phase_start_time is None:
        return session.time_remaining or 0
    total = phase_duration_seconds(session)
    if total == 0:
        return 0
    elapsed = int(((now or utcnow()) - session.phase_start_time).total_seconds())
    return max(0, total - elapsed)


def update_session_timer_info(session: PracticeSession) -> int:
    session.time_remaining = calculate_remaining_time(session)
    return session.time_remaining


# ----------------------------
# 완료 / 피드백 상태
# ----------------------------
def mark_user_completed(session: PracticeSession, user: User) -> None:
    require_participant(session, user).has_completed = True


def mark_user_feedback_given(session: PracticeSession, user: User) -> None:
    require_participant(session, user).has_given_feedback = True


def has_user_completed(session: PracticeSession, user: User) -> bool:
    participant = get_participant(session, user.id)
    return bool(participant and participant.has_completed)


def are_all_users_completed(session: PracticeSession) -> bool:
    return all(p.has_completed for p in active_participants(session))


def has_user_given_feedback_for_current_round(db: Session, session: PracticeSession, user_id: int) -> bool:
    if session.selected_case_id is None:
        return False
    return db.query(Feedback.id).filter(
        Feedback.session_id == session.id,
        Feedback.sender_id == user_id,
        Feedback.case_id == session.selected_case_id,
        Feedback.round_number == session.current_round,
    ).first() is not None


def has_role_given_feedback(db: Session, session: PracticeSession, role: ParticipantRole) -> bool:
    return any(
        has_user_given_feedback_for_current_round(db, session, p.user_id)
        for p in participants_with_role(session, role)
    )


def reset_participant_status(session: PracticeSession) -> None:
    for p in session.participants:
        p.has_completed = False
        p.has_given_feedback = False


# ----------------------------
# 응답/메시지 직렬화
# ----------------------------
def _iso(value):
    return value.isoformat() if value is not None else None


def participant_details(session: PracticeSession) -> list[dict]:
    return [
        {
            "id": str(p.user_id),
            "userId": p.user_id,
            "name": p.user.name if p.user else None,
            "role": p.role.value.lower(),
            "isOnline": True,
            "hasCompleted": bool(p.has_completed),
            "hasGivenFeedback": bool(p.has_given_feedback),
        }
        for p in active_participants(session)
    ]


def _category_payload(case: Case):
    if case.category is None:
        return None
    return {"id": case.category.id, "name": case.category.name}


def case_payload(case: Case) -> dict:
    return {
        "id": case.id,
        "title": case.title,
        "description": case.description,
        "category": _category_payload(case),
        "scenario": case.scenario,
        "doctorNotes": case.doctor_notes,
        "patientNotes": case.patient_notes,
        "observerNotes": case.observer_notes,
        "learningObjectives": case.learning_objectives,
        "doctorSections": case.doctor_sections or [],
        "patientSections": case.patient_sections or [],
        "feedbackCriteria": case.feedback_criteria or [],
        "difficulty": case.difficulty.value if case.difficulty else None,
        "duration": case.duration,
        "imageUrl": case.image_url,
        "isRecallCase": bool(case.is_recall_case),
        "recallDates": case.recall_dates or [],
    }


def case_payload_for_role(case: Case | None, role: ParticipantRole | None):
    if case is None:
        return None
    if role != ParticipantRole.DOCTOR:
        return case_payload(case)
    # 닥터에게는 제목(진단명)을 숨긴다
    return {
        "id": case.id,
        "description": case.description,
        "category": _category_payload(case),
        "sections": case.doctor_sections or [],
        "doctorNotes": case.doctor_notes,
        "patientNotes": case.patient_notes,
        "imageUrl": case.image_url,
        "feedbackCriteria": case.feedback_criteria or [],
    }


def session_config(session: PracticeSession) -> dict:
    return {
        "readingTime": session.reading_time,
        "consultationTime": session.consultation_time,
        "timingType": session.timing_type.value,
        "sessionType": session.session_type.value,
        "selectedTopics": session.selected_topics or [],
        "recallStartDate": _iso(session.recall_start_date),
        "recallEndDate": _iso(session.recall_end_date),
    }


def session_summary(session: PracticeSession) -> dict:
    return {
        "id": session.id,
        "title": session.title,
        "code": session.code,
        "status": session.status.value,
        "phase": session.phase.value,
        "readingTime": session.reading_time,
        "consultationTime": session.consultation_time,
        "timingType": session.timing_type.value,
        "sessionType": session.session_type.value,
        "selectedTopics": session.selected_topics or [],
        "recallStartDate": _iso(session.recall_start_date),
        "recallEndDate": _iso(session.recall_end_date),
        "selectedCaseId": session.selected_case_id,
        "usedCaseIds": session.used_case_ids or [],
        "currentRound": session.current_round,
        "timeRemaining": session.time_remaining,
        "timerStartTimestamp": session.timer_start_timestamp,
        "createdBy": session.created_by,
        "createdAt": _iso(session.created_at),
        "startTime": _iso(session.start_time),
        "endTime": _iso(session.end_time),
    }


def session_list_item(session: PracticeSession) -> dict:
    return {
        "id": session.id,
        "title": session.title,
        "code": session.code,
        "status": session.status.value,
        "phase": session.phase.value,
        "sessionType": session.session_type.value,
        "createdAt": _iso(session.created_at),
        "startTime": _iso(session.start_time),
        "endTime": _iso(session.end_time),
        "participantCount": len(active_participants(session)),
    }


def session_update_payload(session: PracticeSession) -> dict:
    case = session.selected_case
    return {
        "type": "SESSION_UPDATE",
        "sessionCode": session.code,
        "title": session.title,
        "phase": session.phase.value,
        "status": session.status.value,
        "timeRemaining": session.time_remaining,
        "totalTime": phase_duration_seconds(session),
        "timerStartTimestamp": session.timer_start_timestamp,
        "currentRound": session.current_round,
        "config": session_config(session),
        "participants": participant_details(session),
        # 케이스 본문은 역할별 CASE_DATA 로 따로 보낸다
        "selectedCase": {"id": case.id, "category": _category_payload(case)} if case else None,
    }
