# app/db/session.py
# SQLAlchemy 기본 세팅. DB URL은 .env의 DATABASE_URL을 사용.

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from app.config import settings  # Settings() 인스턴스

# 운영: Postgres (예: postgresql+psycopg2://...), 로컬/테스트: sqlite
DATABASE_URL = settings.database_url

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL 환경변수가 설정되어 있지 않습니다.")

if DATABASE_URL.startswith("sqlite"):
    # 타이머 스레드에서도 같은 DB를 써야 하므로 check_same_thread 해제
    # 인메모리 DB는 커넥션이 닫히면 사라지므로 하나만 공유
    sqlite_kwargs = {"connect_args": {"check_same_thread": False}}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        sqlite_kwargs["poolclass"] = StaticPool
    engine = create_engine(DATABASE_URL, **sqlite_kwargs)
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,                      # 끊어진 커넥션 자동 감지
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,   # 풀 크기 초과 연결 금지
        pool_timeout=settings.db_pool_timeout,   # 풀 고갈 시 대기 시간(초)
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
