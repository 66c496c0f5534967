"""
Password hashing and session token utilities.

Responsibilities:
- Hash passwords using Argon2id and verify them in constant time
- Sign session tokens as HS256 JWTs carrying ``id``, ``email`` and ``role``
- Decode tokens, treating any malformed, tampered or expired token as absent
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from argon2.low_level import Type

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

_argon2 = PasswordHasher(time_cost=2, memory_cost=102400, parallelism=8, hash_len=32, type=Type.ID)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    role: str
    expires_at: int


def hash_password(password: str) -> str:
    return _argon2.hash(password)


def verify_password(password: str, encoded_hash: str) -> bool:
    if not password or not encoded_hash:
        return False
    try:
        return _argon2.verify(encoded_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def encode_token(claims: Dict[str, Any], secret: str, expires_in: int, *, now: Optional[float] = None) -> str:
    """Sign ``claims`` with an ``exp`` of ``now + expires_in`` seconds."""
    issued = int(now if now is not None else time.time())
    payload = dict(claims)
    payload["iat"] = issued
    payload["exp"] = issued + int(expires_in)
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str) -> Optional[TokenClaims]:
    """Return the claims of a valid token, or None.

    Signature, expiry and the presence of ``id``/``email``/``role`` are all
    required; anything else is treated as an unauthenticated request.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "id", "email", "role"]},
        )
    except jwt.ExpiredSignatureError:
        logger.debug("token expired")
        return None
    except jwt.InvalidTokenError as exc:
        logger.debug("token rejected: %s", exc)
        return None
    return TokenClaims(
        user_id=str(payload["id"]),
        email=str(payload["email"]),
        role=str(payload["role"]),
        expires_at=int(payload["exp"]),
    )
