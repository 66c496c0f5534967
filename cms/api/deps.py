"""
API dependency helpers.

Components live on ``app.state`` when the application was built with explicit
instances (tests), and fall back to the process-wide singletons otherwise.
Every dependency that hands out a database session first awaits the
readiness gate.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from cms.db.database import StoreClient, get_store
from cms.db.readiness import ReadinessInitializer, get_readiness_initializer
from cms.services.auth_service import AuthError, AuthErrorKind, AuthService, AuthUser
from cms.services.auth_service import get_auth_service as _default_auth_service
from cms.services.cache import CacheClient, get_cache_client

AUTH_COOKIE = "auth-token"


def get_readiness(request: Request) -> ReadinessInitializer:
    readiness = getattr(request.app.state, "readiness", None)
    return readiness if readiness is not None else get_readiness_initializer()


def get_cache(request: Request) -> CacheClient:
    cache = getattr(request.app.state, "cache", None)
    return cache if cache is not None else get_cache_client()


def get_store_client(request: Request) -> StoreClient:
    store = getattr(request.app.state, "store", None)
    return store if store is not None else get_store()


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    return service if service is not None else _default_auth_service()


async def require_ready(readiness: ReadinessInitializer = Depends(get_readiness)) -> None:
    # InitializationError propagates to the app-level 503 handler
    await readiness.ensure_ready()


def get_db(
    _ready: None = Depends(require_ready),
    store: StoreClient = Depends(get_store_client),
):
    """Dependency to get a database session once the schema is verified."""
    db: Session = store.session()
    try:
        yield db
    finally:
        db.close()


def auth_http_error(exc: AuthError) -> HTTPException:
    if exc.kind is AuthErrorKind.FORBIDDEN:
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message)
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message)


def request_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    """Return the session token from the auth cookie or a Bearer header."""
    token = request.cookies.get(AUTH_COOKIE)
    if token:
        return token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def get_current_user(
    request: Request,
    _ready: None = Depends(require_ready),
    auth: AuthService = Depends(get_auth_service),
    authorization: Optional[str] = Header(default=None),
) -> AuthUser:
    try:
        return await auth.authenticate(request_token(request, authorization))
    except AuthError as exc:
        raise auth_http_error(exc)


def require_role(required_role: str):
    """Build a dependency that admits users ranked at or above ``required_role``."""

    async def _dependency(
        user: AuthUser = Depends(get_current_user),
        auth: AuthService = Depends(get_auth_service),
    ) -> AuthUser:
        try:
            return auth.require_role(user, required_role)
        except AuthError as exc:
            raise auth_http_error(exc)

    return _dependency
