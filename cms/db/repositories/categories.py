"""
Repositories for post categories.
"""
from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cms.db import models, schemas


def list_categories(db: Session) -> List[models.Category]:
    return db.query(models.Category).order_by(models.Category.name.asc()).all()


def get_category(db: Session, category_id: uuid.UUID) -> Optional[models.Category]:
    return db.query(models.Category).filter(models.Category.id == category_id).first()


def create_category(db: Session, payload: schemas.CategoryCreate) -> models.Category:
    category = models.Category(**payload.model_dump())
    db.add(category)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(category)
    return category


def update_category(db: Session, category: models.Category, payload: schemas.CategoryUpdate) -> models.Category:
    for field, value in payload.model_dump().items():
        setattr(category, field, value)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(category)
    return category


def delete_category(db: Session, category: models.Category) -> None:
    db.delete(category)
    db.commit()


def count_categories(db: Session) -> int:
    return db.query(models.Category).count()
