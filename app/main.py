# app/main.py

# ------------------------
# 환경 변수 로드
# ------------------------
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

# ------------------------
# FastAPI, CORS 미들웨어 import
# ------------------------
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.db.base import SessionLocal, create_tables
from app.errors import register_exception_handlers
from app.services.seed import run_seed
from app.services.session_timer import timer_service

# ------------------------
# 라우터 import
# ------------------------
from app.routers import auth as auth_router
from app.routers import categories as categories_router
from app.routers import cases as cases_router
from app.routers import sessions as sessions_router
from app.routers import feedback as feedback_router
from app.routers import realtime as realtime_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ------------------------
# 1) 기동/종료 훅
#    - 테이블 생성, (옵션) 샘플 데이터 적재
#    - 종료 시 예약된 타이머 정리
# ------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    if settings.seed_on_startup:
        with SessionLocal() as db:
            run_seed(db)
    logger.info("[APP] started env=%s", settings.app_env)
    yield
    timer_service.shutdown()


# ------------------------
# 2) FastAPI 앱 생성
# ------------------------
app = FastAPI(title="PLAB Practice API", lifespan=lifespan)

# ------------------------
# 3) CORS 미들웨어 추가
#    - 허용 도메인은 CORS_ORIGINS 로 설정
# ------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,  # 쿠키 안 쓰면 False
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# ------------------------
# 4) 라우터 등록
# ------------------------
app.include_router(auth_router.router)
app.include_router(categories_router.router)
app.include_router(cases_router.router)
app.include_router(sessions_router.router)
app.include_router(feedback_router.router)
app.include_router(realtime_router.router)


# ------------------------
# 5) Root 엔드포인트 (health check)
# ------------------------
@app.get("/")
def root():
    return {"ok": True}
