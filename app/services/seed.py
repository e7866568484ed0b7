# app/services/seed.py
# 빈 DB 에 기본 사용자/카테고리/샘플 케이스 적재 (SEED_ON_STARTUP=true 일 때 기동 시 1회)
import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.models.cases import Case, Category, Difficulty
from app.models.user import User, UserRole
from app.services.auth import hash_password

logger = logging.getLogger(__name__)

DEFAULT_CRITERIA = [
    {
        "id": "data_gathering",
        "name": "Data gathering, technical and assessment skills",
        "subCriteria": [
            {"id": "history", "name": "Focused history"},
            {"id": "examination", "name": "Appropriate examination"},
        ],
    },
    {
        "id": "clinical_management",
        "name": "Clinical management skills",
        "subCriteria": [
            {"id": "diagnosis", "name": "Working diagnosis"},
            {"id": "plan", "name": "Management plan"},
        ],
    },
    {
        "id": "interpersonal",
        "name": "Interpersonal skills",
        "subCriteria": [
            {"id": "rapport", "name": "Rapport and empathy"},
            {"id": "explanation", "name": "Clear explanation"},
        ],
    },
]

SAMPLE_CASES = [
    {
        "category": ("General Practice", "General medical practice cases"),
        "title": "Chest Pain Assessment",
        "description": "Acute chest pain evaluation",
        "scenario": "A 45-year-old man presents with sudden onset of severe crushing chest pain radiating "
                    "to his left arm. He appears sweaty and anxious.",
        "doctor_notes": "Take a focused history, perform a cardiovascular examination and discuss immediate management.",
        "patient_notes": "Describe the pain, family history and risk factors. Show appropriate concern.",
        "observer_notes": "Observe systematic approach to chest pain and prioritisation of investigations.",
        "difficulty": Difficulty.INTERMEDIATE,
        "duration": 15,
        "recall_dates": ["2024-03-12", "2024-09-18"],
    },
    {
        "category": ("General Practice", "General medical practice cases"),
        "title": "Hypertension Management",
        "description": "Routine hypertension follow-up",
        "scenario": "A 55-year-old woman attends for follow-up. Home readings are consistently 160/95 mmHg "
                    "despite current medication.",
        "doctor_notes": "Review management, assess cardiovascular risk and discuss treatment optimisation.",
        "patient_notes": "Discuss lifestyle, medication adherence and concerns about side effects.",
        "observer_notes": "Evaluate cardiovascular risk assessment and shared decision making.",
        "difficulty": Difficulty.BEGINNER,
        "duration": 12,
        "recall_dates": [],
    },
    {
        "category": ("Paediatrics", "Child health cases"),
        "title": "Acute Asthma Attack",
        "description": "Emergency asthma management",
        "scenario": "An 8-year-old child is brought in with acute shortness of breath, wheeze and cough, "
                    "using accessory muscles to breathe.",
        "doctor_notes": "Assess severity, start immediate management and explain the plan to the parents.",
        "patient_notes": "Play worried parents. Be anxious but cooperative, give history of triggers.",
        "observer_notes": "Observe paediatric emergency skills and family communication.",
        "difficulty": Difficulty.ADVANCED,
        "duration": 10,
        "recall_dates": ["2024-09-18"],
    },
]


def _sections(notes: str) -> list[dict]:
    return [{"title": "Task", "content": notes}]


def seed_default_users(db: Session) -> int:
    if db.query(User.id).first() is not None:
        return 0
    db.add_all([
        User(name="Admin User", email="admin@plab.com", password_hash=hash_password("admin123"),
             role=UserRole.ADMIN, provider="local"),
        User(name="Test User", email="user@plab.com", password_hash=hash_password("user123"),
             role=UserRole.USER, provider="local"),
    ])
    logger.info("[SEED] default users created (admin@plab.com, user@plab.com)")
    return 2


def seed_sample_cases(db: Session) -> int:
    if db.query(Case.id).first() is not None:
        return 0

    categories: dict[str, Category] = {}
    for item in SAMPLE_CASES:
        name, description = item["category"]
        category = categories.get(name)
        if category is None:
            category = db.query(Category).filter(Category.name == name).first()
            if category is None:
                category = Category(name=name, description=description)
                db.add(category)
            categories[name] = category

        db.add(Case(
            category=category,
            title=item["title"],
            description=item["description"],
            scenario=item["scenario"],
            doctor_notes=item["doctor_notes"],
            patient_notes=item["patient_notes"],
            observer_notes=item["observer_notes"],
            doctor_sections=_sections(item["doctor_notes"]),
            patient_sections=_sections(item["patient_notes"]),
            feedback_criteria=DEFAULT_CRITERIA,
            difficulty=item["difficulty"],
            duration=item["duration"],
            is_recall_case=bool(item["recall_dates"]),
            recall_dates=item["recall_dates"],
        ))
    logger.info("[SEED] %d sample cases loaded", len(SAMPLE_CASES))
    return len(SAMPLE_CASES)


def run_seed(db: Session) -> None:
    # 운영 환경에는 기본 계정을 만들지 않는다
    if not settings.is_prod:
        seed_default_users(db)
    seed_sample_cases(db)
    db.commit()
