"""Runtime environment helpers for phase detection and guarded secrets."""

from typing import Optional

from cms.utils.settings import DEFAULT_JWT_SECRET, Settings, get_settings


def build_phase_active(settings: Optional[Settings] = None) -> bool:
    """Return True while producing offline artifacts (APP_PHASE=build).

    In this phase no live services exist, so the readiness gate and the cache
    client must stay inert and never attempt a connection.
    """
    settings = settings or get_settings()
    return settings.is_build_phase


def resolve_jwt_secret(settings: Optional[Settings] = None) -> str:
    """Return the signing secret; refuse the built-in default in production."""
    settings = settings or get_settings()
    if settings.is_production and settings.jwt_secret == DEFAULT_JWT_SECRET:
        raise RuntimeError(
            "JWT_SECRET must be set when APP_ENV=production; "
            "refusing to sign tokens with the development default."
        )
    return settings.jwt_secret
