# tests/conftest.py
import os

# app 모듈 import 전에 테스트용 환경 고정 (인메모리 SQLite)
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["APP_ENV"] = "test"
os.environ["SUPABASE_JWT_SECRET"] = ""
os.environ["SEED_ON_STARTUP"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"

import pytest
from fastapi.testclient import TestClient

from app.db.base import SessionLocal, create_tables, drop_tables
from app.main import app
from app.models.cases import Case, Category, Difficulty
from app.models.user import User, UserRole
from app.services import auth as auth_svc
from app.services.realtime import hub
from app.services.session_timer import timer_service

CRITERIA = [
    {"id": "history", "name": "History taking", "subCriteria": [{"id": "focus", "name": "Focused"}]},
    {"id": "management", "name": "Management", "subCriteria": []},
]


# ----------------------------
# 예약 실행을 손으로 돌리는 스케줄러
# ----------------------------
class ManualTask:
    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.cancelled = False
        self.fired = False

    @property
    def name(self) -> str:
        return self.fn.func.__name__

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    def __init__(self):
        self.tasks: list[ManualTask] = []

    def schedule(self, delay, fn):
        task = ManualTask(delay, fn)
        self.tasks.append(task)
        return task

    def pending(self, name: str | None = None) -> list[ManualTask]:
        return [
            t for t in self.tasks
            if not t.cancelled and not t.fired and (name is None or t.name == name)
        ]

    def fire(self, task: ManualTask) -> None:
        task.fired = True
        task.fn()

    def fire_phase_timer(self) -> ManualTask:
        (task,) = self.pending("_on_phase_timer_expired")
        self.fire(task)
        return task


class EventRecorder:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, destination: str, payload: dict) -> None:
        self.events.append((destination, payload))

    def of_type(self, msg_type: str) -> list[dict]:
        return [p for _, p in self.events if p.get("type") == msg_type]

    def types(self) -> list[str]:
        return [p.get("type") for _, p in self.events]

    def clear(self) -> None:
        self.events.clear()


# ----------------------------
# fixtures
# ----------------------------
@pytest.fixture(autouse=True)
def _tables():
    create_tables()
    yield
    drop_tables()


@pytest.fixture(autouse=True)
def scheduler():
    manual = ManualScheduler()
    original = timer_service.scheduler
    timer_service.shutdown()
    timer_service.scheduler = manual
    yield manual
    timer_service.shutdown()
    timer_service.scheduler = original


@pytest.fixture
def events():
    recorder = EventRecorder()
    hub.add_listener(recorder)
    yield recorder
    hub.remove_listener(recorder)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db):
    def _make(name: str, role: UserRole = UserRole.USER, password: str | None = None) -> User:
        user = User(
            name=name,
            email=f"{name.lower()}@example.com",
            password_hash=auth_svc.hash_password(password) if password else None,
            role=role,
            provider="local",
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def users(make_user):
    return {
        "host": make_user("Alice"),
        "patient": make_user("Bob"),
        "observer": make_user("Carol"),
        "other": make_user("Dave"),
    }


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {auth_svc.create_access_token(str(user.id))}"}
    return _headers


@pytest.fixture
def cases(db):
    """카테고리 3개, 케이스 6개 (기출 케이스 포함)."""
    cardio = Category(name="Cardiology", description="Heart")
    resp = Category(name="Respiratory", description="Lungs")
    neuro = Category(name="Neurology", description="Brain")
    db.add_all([cardio, resp, neuro])

    def _case(title, category, recall_dates=()):
        return Case(
            title=title,
            description=f"{title} description",
            category=category,
            scenario=f"{title} scenario",
            doctor_notes="Take a history",
            patient_notes="Describe the symptoms",
            observer_notes="Watch the approach",
            doctor_sections=[{"title": "Task", "content": "Doctor task"}],
            patient_sections=[{"title": "Brief", "content": "Patient brief"}],
            feedback_criteria=CRITERIA,
            difficulty=Difficulty.INTERMEDIATE,
            duration=10,
            is_recall_case=bool(recall_dates),
            recall_dates=list(recall_dates),
        )

    rows = {
        "chest_pain": _case("Chest Pain", cardio, ["2024-03-12"]),
        "palpitations": _case("Palpitations", cardio, ["2024-09-18"]),
        "heart_failure": _case("Heart Failure", cardio),
        "asthma": _case("Asthma", resp, ["2024-09-18"]),
        "copd": _case("COPD", resp),
        "headache": _case("Headache", neuro, ["2025-01-05"]),
    }
    db.add_all(rows.values())
    db.commit()
    return rows
