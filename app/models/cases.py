# app/models/cases.py
import enum

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Enum, JSON, Index
from sqlalchemy.orm import relationship

from app.db.base import Base, utcnow


class Difficulty(str, enum.Enum):
    BEGINNER = "BEGINNER"
    INTERMEDIATE = "INTERMEDIATE"
    ADVANCED = "ADVANCED"


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)

    cases = relationship("Case", back_populates="category")


class Case(Base):
    __tablename__ = "cases"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)

    scenario = Column(Text, nullable=True)
    doctor_notes = Column(Text, nullable=True)
    patient_notes = Column(Text, nullable=True)
    observer_notes = Column(Text, nullable=True)
    learning_objectives = Column(Text, nullable=True)

    # 역할별 화면 섹션 [{title, content}, ...]
    doctor_sections = Column(JSON, nullable=False, default=list)
    patient_sections = Column(JSON, nullable=False, default=list)
    # 평가 기준 [{id, name, subCriteria: [{id, name}]}]
    feedback_criteria = Column(JSON, nullable=False, default=list)

    difficulty = Column(Enum(Difficulty, native_enum=False, length=20), nullable=False, default=Difficulty.INTERMEDIATE)
    duration = Column(Integer, nullable=False, default=15)  # 분
    image_url = Column(String(500), nullable=True)

    # 기출(recall) 케이스: 출제일 목록 ["YYYY-MM-DD", ...]
    is_recall_case = Column(Boolean, nullable=False, default=False)
    recall_dates = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_cases_is_recall_case", "is_recall_case"),
    )

    category = relationship("Category", back_populates="cases", lazy="selectin")
