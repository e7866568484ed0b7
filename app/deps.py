# app/deps.py
import logging

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.db.base import SessionLocal
from app.models.user import User
from app.services.auth import resolve_user
from app.services.supa_auth import split_bearer

logger = logging.getLogger(__name__)

# ----------------------------
# DB 세션
# ----------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()  # commit 포함
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

# ----------------------------
# 현재 사용자 가져오기
# ----------------------------
def get_current_user(
    authorization: str | None = Header(None),
    db: Session = Depends(get_db),
) -> User:
    """
    Authorization: Bearer <token>
    로컬 access token 또는 Supabase access token 을 받아 로컬 User 를 돌려준다.
    """
    try:
        token = split_bearer(authorization)
        return resolve_user(db, token)
    except ValueError as e:
        logger.info("[AUTH] rejected: %s", e)
        raise HTTPException(status_code=401, detail="unauthorized")

def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin_only")
    return user
