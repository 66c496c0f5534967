"""
Domain-split SQLAlchemy models with a compatibility aggregator.

Exposes `Base`, `now_utc`, and all ORM classes from a single import path.
"""

from .base import Base, now_utc  # re-export

# Domain models
from .users import User
from .content import Category, Tag, Post, post_tags, POST_STATUSES

__all__ = [
    # base
    "Base",
    "now_utc",
    # users
    "User",
    # content
    "Category",
    "Tag",
    "Post",
    "post_tags",
    "POST_STATUSES",
]
