"""
Repositories for CMS user accounts.
"""
from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from cms.db import models
from cms.utils.role_permissions import DEFAULT_ROLE, normalize_role


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def get_user(db: Session, user_id) -> Optional[models.User]:
    uid = _as_uuid(user_id)
    if uid is None:
        return None
    return db.query(models.User).filter(models.User.id == uid).first()


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email.strip().lower()).first()


def create_user(
    db: Session,
    *,
    email: str,
    password_hash: str,
    name: Optional[str] = None,
    role: str = DEFAULT_ROLE,
) -> models.User:
    user = models.User(
        email=email.strip().lower(),
        password_hash=password_hash,
        name=name or None,
        role=normalize_role(role) or DEFAULT_ROLE,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def list_users(db: Session) -> List[models.User]:
    return db.query(models.User).order_by(models.User.created_at.desc()).all()


def count_users(db: Session) -> int:
    return db.query(models.User).count()
