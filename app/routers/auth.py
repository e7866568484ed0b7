# app/routers/auth.py
import logging
from datetime import datetime

import jwt
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.deps import get_db, get_current_user
from app.models.user import User, UserRole
from app.services import auth as svc
from app.services.auth import SignupIn, LoginIn, TokenRefreshIn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

LOGIN_LIMIT = 5
LOGIN_WINDOW_SEC = 300

# ---------- Schemas ----------
class MeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    name: str
    email: str
    role: UserRole
    provider: str
    created_at: datetime | None = None

class TokenOut(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: MeOut

# ---------- Helpers ----------
def _token_response(user: User) -> TokenOut:
    return TokenOut(**svc.issue_tokens(user), user=MeOut.model_validate(user))

def _rate_key(request: Request, email: str) -> str:
    host = request.client.host if request.client else "unknown"
    return f"{host}:{email.lower()}"

# ---------- Endpoints ----------
@router.post("/signup", response_model=TokenOut, status_code=201)
def signup(body: SignupIn, db: Session = Depends(get_db)):
    email = body.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="email_already_registered")

    user = User(
        name=body.name.strip(),
        email=email,
        password_hash=svc.hash_password(body.password),
        role=UserRole.USER,
        provider="local",
    )
    db.add(user)
    db.flush()  # id 생성
    logger.info("[AUTH] signup user=%s", user.id)
    return _token_response(user)

@router.post("/login", response_model=TokenOut)
def login(body: LoginIn, request: Request, db: Session = Depends(get_db)):
    key = _rate_key(request, body.email)
    if svc.too_many_attempts(key, LOGIN_LIMIT, LOGIN_WINDOW_SEC):
        raise HTTPException(status_code=429, detail="too_many_attempts")

    user = db.query(User).filter(User.email == body.email.lower()).first()
    if user is None or not svc.verify_password(body.password, user.password_hash):
        svc.record_attempt(key)
        raise HTTPException(status_code=401, detail="invalid_credentials")

    svc.clear_attempts(key)
    return _token_response(user)

@router.post("/refresh", response_model=TokenOut)
def refresh(body: TokenRefreshIn, db: Session = Depends(get_db)):
    try:
        data = svc.decode_token(body.refresh_token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="invalid_refresh_token")
    if data.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="invalid_refresh_token")

    sub = str(data.get("sub") or "")
    user = db.get(User, int(sub)) if sub.isdigit() else None
    if user is None:
        raise HTTPException(status_code=401, detail="invalid_refresh_token")
    return _token_response(user)

@router.get("/me", response_model=MeOut)
def me(user: User = Depends(get_current_user)):
    """
    현재 로그인한 사용자 정보.
    - 인증: 로컬 access token 또는 Supabase access token (Authorization: Bearer <token>)
    """
    return MeOut.model_validate(user)
