"""
FastAPI app assembly: logging, middleware, error mapping and router wiring.

``create_app`` accepts explicit component instances so tests can run the API
against an isolated store, readiness gate, cache and auth service; the
module-level ``app`` uses the process-wide singletons.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.requests import Request
from starlette.responses import JSONResponse

from cms.api import admin, auth, categories, posts, tags, users
from cms.api.deps import get_cache, get_readiness
from cms.db.database import StoreClient, StoreErrorKind, classify_store_error
from cms.db.readiness import InitializationError, ReadinessInitializer, get_readiness_initializer
from cms.services.auth_service import AuthService
from cms.services.cache import CacheClient, get_cache_client
from cms.utils.runtime import build_phase_active
from cms.utils.settings import get_settings

# Configure logging
LOG_LEVEL_NAME = get_settings().log_level
LOG_LEVEL = getattr(logging, LOG_LEVEL_NAME, logging.INFO)
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)
logger.setLevel(LOG_LEVEL)

RETRY_AFTER_SECONDS = 5

origins = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:8000",
]


async def _warm_up(readiness: ReadinessInitializer) -> None:
    try:
        await readiness.ensure_ready()
    except InitializationError as exc:
        # requests retry the gate themselves; startup must not fail
        logger.error("startup: schema warm-up failed: %s", exc)


def _should_warm_up(app: FastAPI) -> bool:
    if not app.state.warm_up or build_phase_active():
        return False
    return getattr(app.state, "store", None) is not None or bool(get_settings().database_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("app_startup: log_level=%s", LOG_LEVEL_NAME)
    task: Optional[asyncio.Task] = None
    if _should_warm_up(app):
        readiness = getattr(app.state, "readiness", None)
        if readiness is None:
            readiness = get_readiness_initializer()
        task = asyncio.create_task(_warm_up(readiness))
    yield
    if task is not None and not task.done():
        task.cancel()
    cache = getattr(app.state, "cache", None)
    if cache is None:
        cache = get_cache_client()
    await cache.close()


async def initialization_error_handler(request: Request, exc: InitializationError):
    return JSONResponse(
        {
            "detail": "Database is being initialized. Please try again in a moment.",
            "remediation": exc.remediation,
            "attempted_actions": list(exc.attempted_actions),
            "retry": True,
        },
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.info("integrity conflict on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        {"detail": "A record with the same unique value already exists"},
        status_code=status.HTTP_409_CONFLICT,
    )


async def store_error_handler(request: Request, exc: SQLAlchemyError):
    kind = classify_store_error(exc)
    if kind in (StoreErrorKind.MISSING_TABLE, StoreErrorKind.MISSING_COLUMN, StoreErrorKind.CONNECTIVITY):
        if kind is not StoreErrorKind.CONNECTIVITY:
            get_readiness(request).invalidate(kind.value)
        logger.warning("store %s on %s %s: %s", kind.value, request.method, request.url.path, exc)
        return JSONResponse(
            {"detail": "Database is being initialized. Please try again in a moment.", "retry": True},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )
    logger.error("store error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"detail": "Internal database error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def create_app(
    *,
    store: Optional[StoreClient] = None,
    readiness: Optional[ReadinessInitializer] = None,
    cache: Optional[CacheClient] = None,
    auth_service: Optional[AuthService] = None,
    warm_up: bool = True,
) -> FastAPI:
    application = FastAPI(
        title="CMS Service",
        description="Content management API for posts, categories, tags and users.",
        version="1.0.0",
        lifespan=lifespan,
        # Avoid implicit trailing-slash redirects for predictable URLs
        redirect_slashes=False,
    )
    application.state.store = store
    application.state.readiness = readiness
    application.state.cache = cache
    application.state.auth_service = auth_service
    application.state.warm_up = warm_up

    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(InitializationError, initialization_error_handler)
    application.add_exception_handler(IntegrityError, integrity_error_handler)
    application.add_exception_handler(SQLAlchemyError, store_error_handler)

    application.include_router(auth.router)
    application.include_router(categories.router)
    application.include_router(tags.router)
    application.include_router(posts.router)
    application.include_router(users.router)
    application.include_router(admin.router)

    @application.get("/health")
    async def health_check(request: Request):
        gate = get_readiness(request)
        return {
            "status": "ok",
            "readiness": gate.state.value,
            "cache": get_cache(request).state.value,
        }

    return application


app = create_app()
