"""
Users API endpoints.

Read-only listing of accounts for administrators.
"""
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cms.api.deps import get_cache, get_db, require_role
from cms.db import schemas
from cms.db.repositories import users as user_repo
from cms.services.auth_service import AuthUser
from cms.services.cache import CacheClient
from cms.utils.role_permissions import ROLE_ADMIN

router = APIRouter(prefix="/users", tags=["users"])

LIST_KEY = "users:list"
LIST_TTL_SECONDS = 300


@router.get("", response_model=List[schemas.User])
async def list_users(
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _admin: AuthUser = Depends(require_role(ROLE_ADMIN)),
):
    cached = await cache.get(LIST_KEY)
    if cached is not None:
        return cached
    rows = await run_in_threadpool(user_repo.list_users, db)
    payload = [schemas.User.model_validate(u).model_dump(mode="json") for u in rows]
    await cache.set(LIST_KEY, payload, LIST_TTL_SECONDS)
    return payload
