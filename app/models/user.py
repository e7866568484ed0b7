# app/models/user.py
# User 테이블(SQLAlchemy) 스키마 정의
# 로컬 가입(password_hash) 과 Supabase 연동(supabase_id) 계정을 함께 보관
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum

from app.db.base import Base, utcnow


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=True)  # Supabase 전용 계정은 없음
    role = Column(Enum(UserRole, native_enum=False, length=20), nullable=False, default=UserRole.USER)
    provider = Column(String(20), nullable=False, default="local")  # local|supabase
    supabase_id = Column(String(64), unique=True, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
