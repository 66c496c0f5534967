"""
Authentication API endpoints.

Register, log in (token returned and set as an HTTP-only cookie), log out,
and report the current session user.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from starlette.responses import JSONResponse, Response

from cms.api.deps import AUTH_COOKIE, auth_http_error, get_auth_service, get_cache, get_current_user, require_ready
from cms.db import schemas
from cms.services.auth_service import AuthError, AuthService, AuthUser, EmailAlreadyRegistered
from cms.services.cache import CacheClient
from cms.utils.settings import get_settings

router = APIRouter(prefix="/auth", tags=["auth"])

USERS_NAMESPACE = "users:*"
STATS_KEY = "admin:stats"


def _session_user(user: AuthUser) -> schemas.SessionUser:
    return schemas.SessionUser(id=user.id, email=user.email, name=user.name, role=user.role)


@router.post(
    "/register",
    response_model=schemas.RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_ready)],
)
async def register(
    payload: schemas.UserCreate,
    auth: AuthService = Depends(get_auth_service),
    cache: CacheClient = Depends(get_cache),
):
    try:
        user = await auth.register(payload.email, payload.password, payload.name)
    except EmailAlreadyRegistered:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    await cache.delete_pattern(USERS_NAMESPACE)
    await cache.delete(STATS_KEY)
    return schemas.RegisterResponse(message="Registration successful", user=_session_user(user))


@router.post("/login", response_model=schemas.LoginResponse, dependencies=[Depends(require_ready)])
async def login(
    payload: schemas.LoginRequest,
    auth: AuthService = Depends(get_auth_service),
):
    try:
        user, token = await auth.login(payload.email.strip().lower(), payload.password)
    except AuthError as exc:
        raise auth_http_error(exc)
    body = schemas.LoginResponse(user=_session_user(user), token=token)
    response = JSONResponse(body.model_dump(mode="json"))
    response.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=auth.expires_in,
        httponly=True,
        secure=get_settings().is_production,
        samesite="lax",
        path="/",
    )
    return response


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie(AUTH_COOKIE, path="/")
    return {"success": True}


@router.get("/me", response_model=schemas.SessionUser)
async def me(user: AuthUser = Depends(get_current_user)):
    return _session_user(user)
