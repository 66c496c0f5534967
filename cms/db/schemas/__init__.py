"""
Domain-split Pydantic schemas with a single import path.
"""

from .users import (
    UserBase,
    UserCreate,
    User,
    LoginRequest,
    LoginResponse,
    RegisterResponse,
    SessionUser,
)
from .content import (
    PostStatusEnum,
    CategoryBase,
    CategoryCreate,
    CategoryUpdate,
    Category,
    TagBase,
    TagCreate,
    TagUpdate,
    Tag,
    TaxonomyRef,
    PostAuthor,
    PostCreate,
    PostUpdate,
    Post,
    PublicPost,
    DashboardStats,
)

__all__ = [
    # users
    "UserBase",
    "UserCreate",
    "User",
    "LoginRequest",
    "LoginResponse",
    "RegisterResponse",
    "SessionUser",
    # content
    "PostStatusEnum",
    "CategoryBase",
    "CategoryCreate",
    "CategoryUpdate",
    "Category",
    "TagBase",
    "TagCreate",
    "TagUpdate",
    "Tag",
    "TaxonomyRef",
    "PostAuthor",
    "PostCreate",
    "PostUpdate",
    "Post",
    "PublicPost",
    "DashboardStats",
]
