# app/routers/categories.py
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.deps import get_db, get_current_user, require_admin
from app.models.cases import Category
from app.models.user import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/categories", tags=["categories"])


class CategoryIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    name: str
    description: str | None = None


@router.get("", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return db.query(Category).order_by(Category.name.asc()).all()


@router.get("/{category_id}", response_model=CategoryOut)
def get_category(category_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    category = db.get(Category, category_id)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@router.post("", response_model=CategoryOut, status_code=201)
def create_category(body: CategoryIn, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    name = body.name.strip()
    if db.query(Category.id).filter(Category.name == name).first() is not None:
        raise HTTPException(status_code=409, detail="Category already exists")

    category = Category(name=name, description=body.description)
    db.add(category)
    db.flush()
    logger.info("[CASE] category created id=%s name=%s by admin=%s", category.id, name, admin.id)
    return category
