# app/models/sessions.py
import enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, Date, DateTime, ForeignKey, Enum, JSON, Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, utcnow
from app.models.cases import Case
from app.models.user import User


class SessionStatus(str, enum.Enum):
    CREATED = "CREATED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SessionPhase(str, enum.Enum):
    WAITING = "WAITING"
    READING = "READING"
    CONSULTATION = "CONSULTATION"
    FEEDBACK = "FEEDBACK"
    COMPLETED = "COMPLETED"


class SessionType(str, enum.Enum):
    TOPIC = "TOPIC"
    RECALL = "RECALL"


class TimingType(str, enum.Enum):
    COUNTDOWN = "COUNTDOWN"
    STOPWATCH = "STOPWATCH"


class ParticipantRole(str, enum.Enum):
    DOCTOR = "DOCTOR"
    PATIENT = "PATIENT"
    OBSERVER = "OBSERVER"


def _enum(cls):
    return Enum(cls, native_enum=False, length=20)


class PracticeSession(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    code = Column(String(6), unique=True, index=True, nullable=False)  # 6자리 참가 코드

    status = Column(_enum(SessionStatus), nullable=False, default=SessionStatus.CREATED)
    phase = Column(_enum(SessionPhase), nullable=False, default=SessionPhase.WAITING)
    session_type = Column(_enum(SessionType), nullable=False, default=SessionType.TOPIC)
    timing_type = Column(_enum(TimingType), nullable=False, default=TimingType.COUNTDOWN)

    reading_time = Column(Integer, nullable=False, default=2)        # 분
    consultation_time = Column(Integer, nullable=False, default=8)   # 분
    selected_topics = Column(JSON, nullable=False, default=list)

    selected_case_id = Column(Integer, ForeignKey("cases.id"), nullable=True)
    used_case_ids = Column(JSON, nullable=False, default=list)       # 이미 사용한 케이스 (중복 방지)

    recall_start_date = Column(Date, nullable=True)
    recall_end_date = Column(Date, nullable=True)

    current_round = Column(Integer, nullable=False, default=1)

    # 타이머 상태 (클라이언트 카운트다운 기준값)
    time_remaining = Column(Integer, nullable=True)                  # 초
    phase_start_time = Column(DateTime, nullable=True)
    timer_start_timestamp = Column(BigInteger, nullable=True)        # epoch ms

    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sessions_status_created_at", "status", "created_at"),
    )

    # 관계
    selected_case = relationship(Case, lazy="selectin")
    creator = relationship(User, lazy="selectin")
    participants = relationship(
        "SessionParticipant",
        back_populates="session",
        order_by="SessionParticipant.id",
        lazy="selectin",
    )


class SessionParticipant(Base):
    __tablename__ = "session_participants"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(_enum(ParticipantRole), nullable=False)

    # 나가도 행은 남기고 플래그만 내림
    is_active = Column(Boolean, nullable=False, default=True)
    has_completed = Column(Boolean, nullable=False, default=False)
    has_given_feedback = Column(Boolean, nullable=False, default=False)
    joined_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_session_participants_session_user"),
    )

    session = relationship("PracticeSession", back_populates="participants")
    user = relationship(User, lazy="selectin")
