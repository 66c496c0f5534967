"""
Administrative endpoints: dashboard counters, readiness inspection and an
on-demand migration run.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cms.api.deps import get_cache, get_db, get_readiness, get_store_client, require_role
from cms.db import schemas
from cms.db.database import StoreClient
from cms.db.readiness import ReadinessInitializer
from cms.db.repositories import categories as category_repo
from cms.db.repositories import posts as post_repo
from cms.db.repositories import tags as tag_repo
from cms.db.repositories import users as user_repo
from cms.db.schema import ApplyMigrations
from cms.services.auth_service import AuthUser
from cms.services.cache import CacheClient
from cms.utils.role_permissions import ROLE_ADMIN, ROLE_EDITOR

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

STATS_KEY = "admin:stats"
STATS_TTL_SECONDS = 300


def _collect_stats(db: Session) -> schemas.DashboardStats:
    by_status = post_repo.count_posts_by_status(db)
    return schemas.DashboardStats(
        total_posts=sum(by_status.values()),
        published_posts=by_status.get("PUBLISHED", 0),
        draft_posts=by_status.get("DRAFT", 0),
        archived_posts=by_status.get("ARCHIVED", 0),
        categories=category_repo.count_categories(db),
        tags=tag_repo.count_tags(db),
        users=user_repo.count_users(db),
    )


@router.get("/stats", response_model=schemas.DashboardStats)
async def dashboard_stats(
    db: Session = Depends(get_db),
    cache: CacheClient = Depends(get_cache),
    _user: AuthUser = Depends(require_role(ROLE_EDITOR)),
):
    cached = await cache.get(STATS_KEY)
    if cached is not None:
        return cached
    stats = await run_in_threadpool(_collect_stats, db)
    payload = stats.model_dump(mode="json")
    await cache.set(STATS_KEY, payload, STATS_TTL_SECONDS)
    return payload


@router.get("/readiness")
async def readiness_snapshot(
    readiness: ReadinessInitializer = Depends(get_readiness),
    cache: CacheClient = Depends(get_cache),
    _admin: AuthUser = Depends(require_role(ROLE_ADMIN)),
):
    return {"readiness": readiness.snapshot(), "cache": cache.snapshot()}


@router.post("/schema/migrate")
async def run_migrations(
    store: StoreClient = Depends(get_store_client),
    readiness: ReadinessInitializer = Depends(get_readiness),
    _admin: AuthUser = Depends(require_role(ROLE_ADMIN)),
):
    action = ApplyMigrations()
    logger.info("admin: running %s on demand", action.name)
    try:
        await run_in_threadpool(action.apply, store)
    except Exception as exc:
        logger.exception("admin: %s failed", action.name)
        raise HTTPException(status_code=500, detail=f"Failed to apply migrations: {exc}")
    await run_in_threadpool(store.reconnect)
    verified = await action.verify(store, readiness.requirement)
    return {"success": verified, "action": action.name, "readiness": readiness.snapshot()}
