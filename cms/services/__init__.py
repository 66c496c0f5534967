"""Business logic services package with public service helpers."""

from .cache import (
    CacheClient,
    CacheErrorKind,
    ConnectionState,
    get_cache_client,
    reset_cache_client_for_tests,
)
from .auth_service import (
    AuthError,
    AuthErrorKind,
    AuthService,
    AuthUser,
    EmailAlreadyRegistered,
    get_auth_service,
    reset_auth_service_for_tests,
)

__all__ = [
    "CacheClient",
    "CacheErrorKind",
    "ConnectionState",
    "get_cache_client",
    "reset_cache_client_for_tests",
    "AuthError",
    "AuthErrorKind",
    "AuthService",
    "AuthUser",
    "EmailAlreadyRegistered",
    "get_auth_service",
    "reset_auth_service_for_tests",
]
