"""
공용 DB 베이스/세션 팩토리.
SessionLocal, engine, Base 정의는 app.db.session 한 곳에서 관리한다.
"""
from datetime import datetime, timezone
import time

from app.db.session import engine, SessionLocal, Base

__all__ = ["engine", "SessionLocal", "Base", "utcnow", "epoch_millis", "create_tables", "drop_tables"]


def utcnow() -> datetime:
    # DB에는 tz 없는 UTC 로 저장 (sqlite/postgres 공통)
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_millis() -> int:
    return int(time.time() * 1000)


def _import_models():
    # metadata 에 테이블이 등록되려면 모델 모듈이 한 번은 import 되어야 한다
    from app.models import user, cases, sessions, feedback  # noqa: F401


def create_tables():
    _import_models()
    Base.metadata.create_all(bind=engine)


def drop_tables():
    _import_models()
    Base.metadata.drop_all(bind=engine)
