# app/config.py


from dotenv import load_dotenv
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()  # .env 파일 먼저 읽기

BASE_DIR = Path(__file__).resolve().parent.parent

class Settings(BaseSettings):
    # 환경 구분 (local | dev | prod)
    app_env: str = "local"
    log_level: str = "INFO"

    # DB
    database_url: str                        # DATABASE_URL
    db_pool_size: int = 30
    db_max_overflow: int = 0
    db_pool_timeout: int = 30

    # CORS (JSON 리스트 형태로 받음)
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:3001",
        "http://localhost:5173",
    ]

    # 로컬 계정 JWT
    secret_key: str = "change-me"
    access_token_min: int = 60
    refresh_token_days: int = 14
    bcrypt_rounds: int = 12

    # Supabase 토큰 브리지 (없으면 로컬 토큰만 허용)
    supabase_url: str | None = None               # SUPABASE_URL
    supabase_jwt_secret: str | None = None        # SUPABASE_JWT_SECRET
    supabase_jwt_audience: str = "authenticated"  # SUPABASE_JWT_AUDIENCE
    supabase_issuer: str | None = None            # SUPABASE_ISSUER

    # 세션 타이머 (초)
    feedback_timeout_seconds: int = 600
    disconnect_timeout_seconds: int = 300

    # 기동 시 카테고리/케이스 기본 데이터 적재
    seed_on_startup: bool = False

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),  # 루트 .env 절대경로
        env_file_encoding="utf-8",
        extra="ignore",                   # 필요 없는 env 무시
    )

    @property
    def is_prod(self) -> bool:
        return self.app_env.lower() in ("prod", "production")

settings = Settings()
