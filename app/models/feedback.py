# app/models/feedback.py
from sqlalchemy import Column, Integer, Float, Text, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship

from app.db.base import Base, utcnow
from app.models.sessions import PracticeSession
from app.models.user import User


class Feedback(Base):
    """
    라운드별 피드백 (보낸 사람 -> 닥터 역할 참가자).
    criteria_scores: [{criterionId, criterionName, score, subScores: [{subCriterionId, subCriterionName, score}]}]
    """
    __tablename__ = "feedback"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # 피드백 시점의 케이스/라운드 (역할 교대 이후에도 구분 가능하도록 저장)
    case_id = Column(Integer, ForeignKey("cases.id"), nullable=True)
    round_number = Column(Integer, nullable=False, default=1)

    comment = Column(Text, nullable=False)
    criteria_scores = Column(JSON, nullable=False, default=list)
    overall_performance = Column(Float, nullable=True)
    score = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_feedback_session_case_round", "session_id", "case_id", "round_number"),
    )

    session = relationship(PracticeSession, lazy="selectin")
    sender = relationship(User, foreign_keys=[sender_id], lazy="selectin")
    recipient = relationship(User, foreign_keys=[recipient_id], lazy="selectin")
