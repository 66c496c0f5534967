"""
App assembly entry point.

Re-exports the FastAPI `app` from `cms.api.main` for `uvicorn app:app`.
"""

from cms.api.main import app  # noqa: F401
