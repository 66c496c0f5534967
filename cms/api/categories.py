"""
Categories API endpoints.

Listing is cached under ``categories:list``; every write invalidates the
``categories:*`` namespace and the dashboard stats after the commit.
"""
from typing import List
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cms.api.deps import get_cache, get_current_user, get_db, require_role
from cms.db import schemas
from cms.db.repositories import categories as category_repo
from cms.services.auth_service import AuthUser
from cms.services.cache import CacheClient
from cms.utils.role_permissions import ROLE_EDITOR, ROLE_VIEWER

router = APIRouter(prefix="/categories", tags=["categories"])

LIST_KEY = "categories:list"
NAMESPACE = "categories:*"
STATS_KEY = "admin:stats"
LIST_TTL_SECONDS = 3600


async def _invalidate(cache: CacheClient) -> None:
    await cache.delete_pattern(NAMESPACE)
    await cache.delete(STATS_KEY)


@router.get("", response_model=List[schemas.Category])
async def list_categories(
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(get_current_user),
):
    cached = await cache.get(LIST_KEY)
    if cached is not None:
        return cached
    rows = await run_in_threadpool(category_repo.list_categories, db)
    payload = [schemas.Category.model_validate(c).model_dump(mode="json") for c in rows]
    await cache.set(LIST_KEY, payload, LIST_TTL_SECONDS)
    return payload


@router.post("", response_model=schemas.Category, status_code=status.HTTP_201_CREATED)
async def create_category(
    payload: schemas.CategoryCreate,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(require_role(ROLE_VIEWER)),
):
    category = await run_in_threadpool(category_repo.create_category, db, payload)
    await _invalidate(cache)
    return category


@router.get("/{category_id}", response_model=schemas.Category)
async def get_category(
    category_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(get_current_user),
):
    category = await run_in_threadpool(category_repo.get_category, db, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@router.put("/{category_id}", response_model=schemas.Category)
async def update_category(
    category_id: uuid.UUID,
    payload: schemas.CategoryUpdate,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(require_role(ROLE_VIEWER)),
):
    category = await run_in_threadpool(category_repo.get_category, db, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    category = await run_in_threadpool(category_repo.update_category, db, category, payload)
    await _invalidate(cache)
    return category


@router.delete("/{category_id}")
async def delete_category(
    category_id: uuid.UUID,
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(require_role(ROLE_EDITOR)),
):
    category = await run_in_threadpool(category_repo.get_category, db, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    await run_in_threadpool(category_repo.delete_category, db, category)
    await _invalidate(cache)
    return {"success": True}
