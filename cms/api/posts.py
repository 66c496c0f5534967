"""
Posts API endpoints.

Authenticated management of posts plus the anonymous public listing. Post
writes invalidate ``posts:*`` (covering the public listing and slugs) and
``admin:stats`` after the commit.
"""
from typing import List
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cms.api.deps import get_cache, get_current_user, get_db
from cms.db import schemas
from cms.db.repositories import posts as post_repo
from cms.services.auth_service import AuthUser, has_permission
from cms.services.cache import CacheClient
from cms.utils.role_permissions import ROLE_ADMIN, ROLE_EDITOR

router = APIRouter(prefix="/posts", tags=["posts"])

LIST_KEY = "posts:list"
PUBLIC_LIST_KEY = "posts:public:list"
PUBLIC_SLUG_KEY = "posts:public:{slug}"
NAMESPACE = "posts:*"
STATS_KEY = "admin:stats"
LIST_TTL_SECONDS = 300
PUBLIC_LIST_TTL_SECONDS = 300
PUBLIC_SLUG_TTL_SECONDS = 600


def _can_modify(user: AuthUser, post) -> bool:
    return user.role == ROLE_ADMIN or str(post.author_id) == user.id


async def _invalidate(cache: CacheClient) -> None:
    await cache.delete_pattern(NAMESPACE)
    await cache.delete(STATS_KEY)


async def _load_post(db: Session, post_id: uuid.UUID):
    post = await run_in_threadpool(post_repo.get_post, db, post_id)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


# Public routes are registered before "/{post_id}" so "public" is never parsed as an id
@router.get("/public", response_model=List[schemas.PublicPost])
async def list_public_posts(
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    cached = await cache.get(PUBLIC_LIST_KEY)
    if cached is not None:
        return cached
    rows = await run_in_threadpool(post_repo.list_published_posts, db)
    payload = [schemas.PublicPost.model_validate(p).model_dump(mode="json") for p in rows]
    await cache.set(PUBLIC_LIST_KEY, payload, PUBLIC_LIST_TTL_SECONDS)
    return payload


@router.get("/public/{slug}", response_model=schemas.PublicPost)
async def get_public_post(
    slug: str,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
):
    key = PUBLIC_SLUG_KEY.format(slug=slug)
    cached = await cache.get(key)
    if cached is not None:
        return cached
    post = await run_in_threadpool(post_repo.get_published_post_by_slug, db, slug)
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    payload = schemas.PublicPost.model_validate(post).model_dump(mode="json")
    await cache.set(key, payload, PUBLIC_SLUG_TTL_SECONDS)
    return payload


@router.get("", response_model=List[schemas.Post])
async def list_posts(
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(get_current_user),
):
    cached = await cache.get(LIST_KEY)
    if cached is not None:
        return cached
    rows = await run_in_threadpool(post_repo.list_posts, db)
    payload = [schemas.Post.model_validate(p).model_dump(mode="json") for p in rows]
    await cache.set(LIST_KEY, payload, LIST_TTL_SECONDS)
    return payload


@router.post("", response_model=schemas.Post, status_code=status.HTTP_201_CREATED)
async def create_post(
    payload: schemas.PostCreate,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    user: AuthUser = Depends(get_current_user),
):
    try:
        post = await run_in_threadpool(post_repo.create_post, db, author_id=uuid.UUID(user.id), payload=payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    await _invalidate(cache)
    return post


@router.get("/{post_id}", response_model=schemas.Post)
async def get_post(
    post_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(get_current_user),
):
    return await _load_post(db, post_id)


@router.put("/{post_id}", response_model=schemas.Post)
async def update_post(
    post_id: uuid.UUID,
    payload: schemas.PostUpdate,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    user: AuthUser = Depends(get_current_user),
):
    post = await _load_post(db, post_id)
    if not _can_modify(user, post):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    try:
        post = await run_in_threadpool(post_repo.update_post, db, post, payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    await _invalidate(cache)
    return post


@router.delete("/{post_id}")
async def delete_post(
    post_id: uuid.UUID,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    user: AuthUser = Depends(get_current_user),
):
    if not has_permission(user.role, ROLE_EDITOR):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    post = await _load_post(db, post_id)
    if not _can_modify(user, post):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    await run_in_threadpool(post_repo.delete_post, db, post)
    await _invalidate(cache)
    return {"success": True}
