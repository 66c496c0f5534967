"""
Tags API endpoints.

Listing is cached under ``tags:list``; every write invalidates the
``tags:*`` namespace and the dashboard stats after the commit.
"""
from typing import List
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cms.api.deps import get_cache, get_current_user, get_db, require_role
from cms.db import schemas
from cms.db.repositories import tags as tag_repo
from cms.services.auth_service import AuthUser
from cms.services.cache import CacheClient
from cms.utils.role_permissions import ROLE_EDITOR, ROLE_VIEWER

router = APIRouter(prefix="/tags", tags=["tags"])

LIST_KEY = "tags:list"
NAMESPACE = "tags:*"
STATS_KEY = "admin:stats"
LIST_TTL_SECONDS = 3600


async def _invalidate(cache: CacheClient) -> None:
    await cache.delete_pattern(NAMESPACE)
    await cache.delete(STATS_KEY)


@router.get("", response_model=List[schemas.Tag])
async def list_tags(
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(get_current_user),
):
    cached = await cache.get(LIST_KEY)
    if cached is not None:
        return cached
    rows = await run_in_threadpool(tag_repo.list_tags, db)
    payload = [schemas.Tag.model_validate(t).model_dump(mode="json") for t in rows]
    await cache.set(LIST_KEY, payload, LIST_TTL_SECONDS)
    return payload


@router.post("", response_model=schemas.Tag, status_code=status.HTTP_201_CREATED)
async def create_tag(
    payload: schemas.TagCreate,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(require_role(ROLE_VIEWER)),
):
    tag = await run_in_threadpool(tag_repo.create_tag, db, payload)
    await _invalidate(cache)
    return tag


@router.get("/{tag_id}", response_model=schemas.Tag)
async def get_tag(
    tag_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(get_current_user),
):
    tag = await run_in_threadpool(tag_repo.get_tag, db, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found")
    return tag


@router.put("/{tag_id}", response_model=schemas.Tag)
async def update_tag(
    tag_id: uuid.UUID,
    payload: schemas.TagUpdate,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(require_role(ROLE_VIEWER)),
):
    tag = await run_in_threadpool(tag_repo.get_tag, db, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found")
    tag = await run_in_threadpool(tag_repo.update_tag, db, tag, payload)
    await _invalidate(cache)
    return tag


@router.delete("/{tag_id}")
async def delete_tag(
    tag_id: uuid.UUID,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(require_role(ROLE_EDITOR)),
):
    tag = await run_in_threadpool(tag_repo.get_tag, db, tag_id)
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found")
    await run_in_threadpool(tag_repo.delete_tag, db, tag)
    await _invalidate(cache)
    return {"success": True}
