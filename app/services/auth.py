# 인증 관련 로직
# - Pydantic 스키마, 비밀번호 해시/검증, 로컬 JWT 생성/검증, 간단 레이트리밋 유틸
# - Supabase 토큰 사용자를 로컬 User 로 연결
# 실제 라우팅은 app/routers/auth.py 에서 이루어지고, 이 파일은 로직만 담당함.
import logging
import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import jwt  # 로컬 JWT 인코딩/디코딩 (PyJWT)
from passlib.context import CryptContext  # 비밀번호 해시 처리용
from pydantic import BaseModel, EmailStr, constr
from sqlalchemy.orm import Session

from app.config import settings
from app.models.user import User, UserRole
from app.services.supa_auth import supabase_enabled, verify_supabase_token

logger = logging.getLogger(__name__)

# bcrypt 를 사용해 비밀번호를 해시/검증
pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds)

# ---------- Pydantic Schemas ----------
class SignupIn(BaseModel):
    name: constr(min_length=1, max_length=100)
    email: EmailStr
    password: constr(min_length=8)

class LoginIn(BaseModel):
    email: EmailStr
    password: str

class TokenRefreshIn(BaseModel):
    refresh_token: str

# ---------- Password ----------
def hash_password(raw: str) -> str:
    return pwd_ctx.hash(raw)

def verify_password(raw: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    return pwd_ctx.verify(raw, hashed)

# ---------- JWT ----------
def _encode(payload: dict) -> str:
    return jwt.encode(payload, settings.secret_key, algorithm="HS256")

def decode_token(token: str) -> dict:
    # 만료/서명 오류는 jwt.PyJWTError 로 올라간다
    return jwt.decode(token, settings.secret_key, algorithms=["HS256"])

def create_access_token(sub: str) -> str:
    # 유효기간 : 분 단위
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,  # 사용자 id
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_min)).timestamp()),
    }
    return _encode(payload)

def create_refresh_token(sub: str) -> str:
    # 유효기간 : 일 단위, jti 로 개별 토큰 식별
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "type": "refresh",
        "jti": str(uuid.uuid4()),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(days=settings.refresh_token_days)).timestamp()),
    }
    return _encode(payload)

def issue_tokens(user: User) -> dict:
    return {
        "access_token": create_access_token(str(user.id)),
        "refresh_token": create_refresh_token(str(user.id)),
        "token_type": "bearer",
    }

# ---------- Very simple rate limit (in-memory) ----------
# key(email/IP)에 따른 시도 시간 목록 저장
_attempts = defaultdict(list)

def too_many_attempts(key: str, limit: int, window_sec: int) -> bool:
    # 최근 window_sec(초) 동안 limit 이상 시도했으면 True(차단)
    now = time.time()
    _attempts[key] = [t for t in _attempts[key] if now - t < window_sec]
    return len(_attempts[key]) >= limit

def record_attempt(key: str) -> None:
    _attempts[key].append(time.time())

def clear_attempts(key: str) -> None:
    _attempts.pop(key, None)

# ---------- Token -> User ----------
def _user_from_local_token(db: Session, token: str) -> User:
    data = decode_token(token)
    if data.get("type") != "access":
        raise ValueError("access token required")
    sub = str(data.get("sub") or "")
    if not sub.isdigit():
        raise ValueError("invalid subject")
    user = db.get(User, int(sub))
    if user is None:
        raise ValueError("user not found")
    return user

def sync_supabase_user(db: Session, claims: dict) -> User:
    """Supabase 사용자 -> 로컬 User (supabase_id, 없으면 email 로 연결, 처음이면 생성)"""
    supabase_id = claims["user_id"]
    email = claims.get("email")

    user = db.query(User).filter(User.supabase_id == supabase_id).first()
    if user is None and email:
        user = db.query(User).filter(User.email == email).first()
        if user is not None:
            user.supabase_id = supabase_id
    if user is None:
        if not email:
            raise ValueError("supabase token without email")
        user = User(
            name=claims.get("name") or email.split("@")[0],
            email=email,
            role=UserRole.USER,
            provider="supabase",
            supabase_id=supabase_id,
        )
        db.add(user)
        logger.info("[AUTH] created local user for supabase id=%s", supabase_id)
    db.flush()
    return user

def resolve_user(db: Session, token: str) -> User:
    """로컬 토큰을 먼저 확인하고, 실패하면 Supabase 토큰으로 시도"""
    try:
        return _user_from_local_token(db, token)
    except jwt.PyJWTError as local_error:
        if not supabase_enabled():
            raise ValueError("invalid token") from local_error
    claims = verify_supabase_token(token)
    return sync_supabase_user(db, claims)
