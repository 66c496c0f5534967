"""
Repositories for post tags.
"""
from __future__ import annotations

import uuid
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cms.db import models, schemas


def list_tags(db: Session) -> List[models.Tag]:
    return db.query(models.Tag).order_by(models.Tag.name.asc()).all()


def get_tag(db: Session, tag_id: uuid.UUID) -> Optional[models.Tag]:
    return db.query(models.Tag).filter(models.Tag.id == tag_id).first()


def get_tags_by_ids(db: Session, tag_ids: Iterable[uuid.UUID]) -> List[models.Tag]:
    ids = list(dict.fromkeys(tag_ids))
    if not ids:
        return []
    return db.query(models.Tag).filter(models.Tag.id.in_(ids)).all()


def create_tag(db: Session, payload: schemas.TagCreate) -> models.Tag:
    tag = models.Tag(**payload.model_dump())
    db.add(tag)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(tag)
    return tag


def update_tag(db: Session, tag: models.Tag, payload: schemas.TagUpdate) -> models.Tag:
    for field, value in payload.model_dump().items():
        setattr(tag, field, value)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(tag)
    return tag


def delete_tag(db: Session, tag: models.Tag) -> None:
    db.delete(tag)
    db.commit()


def count_tags(db: Session) -> int:
    return db.query(models.Tag).count()
