"""
Repositories for posts.

Handles tag association, featured image normalization and the
``published_at`` stamp on the first transition to PUBLISHED.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from cms.db import models, schemas
from cms.db.repositories import tags as tag_repo

PUBLISHED = schemas.PostStatusEnum.PUBLISHED.value
PUBLIC_LISTING_LIMIT = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_featured_image(value: Optional[str]) -> Optional[str]:
    """Keep inline ``data:image/`` URLs only; anything else is stored as NULL."""
    if not value:
        return None
    value = value.strip()
    if not value.startswith("data:image/"):
        return None
    return value


def _with_relations(query):
    return query.options(
        joinedload(models.Post.author),
        joinedload(models.Post.category),
        selectinload(models.Post.tags),
    )


def _resolve_tags(db: Session, tag_ids) -> List[models.Tag]:
    wanted = list(dict.fromkeys(tag_ids))
    found = tag_repo.get_tags_by_ids(db, wanted)
    if len(found) != len(wanted):
        known = {t.id for t in found}
        missing = [str(t) for t in wanted if t not in known]
        raise ValueError(f"Unknown tag id(s): {', '.join(missing)}")
    return found


def list_posts(db: Session) -> List[models.Post]:
    return _with_relations(db.query(models.Post)).order_by(models.Post.created_at.desc()).all()


def list_published_posts(db: Session, limit: int = PUBLIC_LISTING_LIMIT) -> List[models.Post]:
    return (
        _with_relations(db.query(models.Post))
        .filter(models.Post.status == PUBLISHED)
        .order_by(models.Post.published_at.desc())
        .limit(limit)
        .all()
    )


def get_post(db: Session, post_id: uuid.UUID) -> Optional[models.Post]:
    return _with_relations(db.query(models.Post)).filter(models.Post.id == post_id).first()


def get_published_post_by_slug(db: Session, slug: str) -> Optional[models.Post]:
    return (
        _with_relations(db.query(models.Post))
        .filter(models.Post.slug == slug, models.Post.status == PUBLISHED)
        .first()
    )


def create_post(db: Session, *, author_id: uuid.UUID, payload: schemas.PostCreate) -> models.Post:
    status = payload.status.value
    post = models.Post(
        title=payload.title,
        slug=payload.slug,
        content=payload.content,
        excerpt=payload.excerpt or None,
        featured_image=normalize_featured_image(payload.featured_image),
        status=status,
        category_id=payload.category_id,
        author_id=author_id,
        published_at=_now() if status == PUBLISHED else None,
    )
    post.tags = _resolve_tags(db, payload.tag_ids)
    db.add(post)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    return get_post(db, post.id)


def update_post(db: Session, post: models.Post, payload: schemas.PostUpdate) -> models.Post:
    data = payload.model_dump(exclude_unset=True)
    for field in ("title", "slug", "content"):
        if data.get(field):
            setattr(post, field, data[field])
    if "excerpt" in data:
        post.excerpt = data["excerpt"] or None
    if "featured_image" in data:
        post.featured_image = normalize_featured_image(data["featured_image"])
    if data.get("status") is not None:
        status = data["status"].value
        if status == PUBLISHED and post.status != PUBLISHED:
            post.published_at = _now()
        post.status = status
    if "category_id" in data:
        post.category_id = data["category_id"]
    if data.get("tag_ids") is not None:
        post.tags = _resolve_tags(db, data["tag_ids"])
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    return get_post(db, post.id)


def delete_post(db: Session, post: models.Post) -> None:
    db.delete(post)
    db.commit()


def count_posts_by_status(db: Session) -> Dict[str, int]:
    rows = db.query(models.Post.status, func.count(models.Post.id)).group_by(models.Post.status).all()
    counts = {status: 0 for status in models.POST_STATUSES}
    for status, total in rows:
        counts[status] = int(total)
    return counts
