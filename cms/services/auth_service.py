"""
Session and authorization gate.

Sessions are stateless HS256 tokens; the identity behind a token is resolved
through the ``session:<user id>`` cache entry first and the store second.
Cached sessions are only removed by TTL expiry, so a role change becomes
visible once the entry expires.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from cms.db.database import get_store
from cms.db.repositories import users as user_repo
from cms.services.cache import CacheClient, get_cache_client
from cms.utils import role_permissions
from cms.utils.runtime import resolve_jwt_secret
from cms.utils.settings import get_settings
from cms.utils.token_crypto import decode_token, encode_token, hash_password, verify_password

logger = logging.getLogger("cms.auth")

SESSION_KEY_PREFIX = "session:"


class AuthErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"


class AuthError(Exception):
    def __init__(self, kind: AuthErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class EmailAlreadyRegistered(Exception):
    pass


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str
    name: Optional[str]
    role: str

    @classmethod
    def from_model(cls, user) -> "AuthUser":
        return cls(id=str(user.id), email=user.email, name=user.name, role=user.role)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["AuthUser"]:
        try:
            return cls(id=str(data["id"]), email=str(data["email"]), name=data.get("name"), role=str(data["role"]))
        except (KeyError, TypeError, AttributeError):
            return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def session_key(user_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{user_id}"


def has_permission(user_role: Optional[str], required_role: str) -> bool:
    return role_permissions.has_permission(user_role, required_role)


class AuthService:
    """Issues and verifies session tokens and resolves their users."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cache: CacheClient,
        *,
        secret: str,
        expires_in: int,
        session_ttl: int,
    ):
        self._session_factory = session_factory
        self.cache = cache
        self._secret = secret
        self.expires_in = expires_in
        self.session_ttl = session_ttl

    def issue_token(self, user: AuthUser) -> str:
        return encode_token(
            {"id": user.id, "email": user.email, "role": user.role},
            self._secret,
            self.expires_in,
        )

    def verify_token(self, token: Optional[str]) -> Optional[AuthUser]:
        claims = decode_token(token or "", self._secret)
        if claims is None:
            return None
        return AuthUser(id=claims.user_id, email=claims.email, name=None, role=claims.role)

    async def lookup_user(self, user_id: str) -> Optional[AuthUser]:
        cached = await self.cache.get(session_key(user_id))
        if isinstance(cached, dict):
            user = AuthUser.from_dict(cached)
            if user is not None:
                return user
            logger.warning("auth: discarding malformed session entry for %s", user_id)

        record = await run_in_threadpool(self._load_user, user_id)
        if record is None:
            return None
        await self.cache.set(session_key(record.id), record.to_dict(), self.session_ttl)
        return record

    async def authenticate(self, token: Optional[str]) -> AuthUser:
        """Resolve a request token to a live user or raise UNAUTHORIZED."""
        if not token:
            raise AuthError(AuthErrorKind.UNAUTHORIZED, "Unauthorized")
        claims = self.verify_token(token)
        if claims is None:
            raise AuthError(AuthErrorKind.UNAUTHORIZED, "Invalid token")
        user = await self.lookup_user(claims.id)
        if user is None:
            raise AuthError(AuthErrorKind.UNAUTHORIZED, "User not found")
        return user

    def require_role(self, user: AuthUser, required_role: str) -> AuthUser:
        if not has_permission(user.role, required_role):
            raise AuthError(AuthErrorKind.FORBIDDEN, "Forbidden")
        return user

    async def login(self, email: str, password: str):
        """Return ``(AuthUser, token)``; unknown email and wrong password look the same."""
        found = await run_in_threadpool(self._load_credentials, email)
        if found is None or not verify_password(password, found[1]):
            logger.info("auth: failed login for %s", email)
            raise AuthError(AuthErrorKind.UNAUTHORIZED, "Invalid credentials")
        user = found[0]
        token = self.issue_token(user)
        await self.cache.set(session_key(user.id), user.to_dict(), self.session_ttl)
        logger.info("auth: login user_id=%s role=%s", user.id, user.role)
        return user, token

    async def register(self, email: str, password: str, name: Optional[str] = None) -> AuthUser:
        password_hash = hash_password(password)
        user = await run_in_threadpool(self._create_user, email, password_hash, name)
        logger.info("auth: registered user_id=%s", user.id)
        return user

    def _load_user(self, user_id: str) -> Optional[AuthUser]:
        db = self._session_factory()
        try:
            user = user_repo.get_user(db, user_id)
            return AuthUser.from_model(user) if user else None
        finally:
            db.close()

    def _load_credentials(self, email: str):
        db = self._session_factory()
        try:
            user = user_repo.get_user_by_email(db, email)
            if user is None:
                return None
            return AuthUser.from_model(user), user.password_hash
        finally:
            db.close()

    def _create_user(self, email: str, password_hash: str, name: Optional[str]) -> AuthUser:
        db = self._session_factory()
        try:
            if user_repo.get_user_by_email(db, email) is not None:
                raise EmailAlreadyRegistered(email)
            try:
                user = user_repo.create_user(
                    db,
                    email=email,
                    password_hash=password_hash,
                    name=name,
                    role=role_permissions.DEFAULT_ROLE,
                )
            except IntegrityError as exc:
                db.rollback()
                # lost a race with a concurrent registration
                raise EmailAlreadyRegistered(email) from exc
            return AuthUser.from_model(user)
        finally:
            db.close()


_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    global _auth_service
    if _auth_service is None:
        settings = get_settings()
        _auth_service = AuthService(
            lambda: get_store().session(),
            get_cache_client(),
            secret=resolve_jwt_secret(settings),
            expires_in=settings.jwt_expires_in_seconds,
            session_ttl=settings.session_ttl_seconds,
        )
    return _auth_service


def reset_auth_service_for_tests(service: Optional[AuthService] = None) -> None:
    global _auth_service
    _auth_service = service
