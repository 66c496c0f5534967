import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class PostStatusEnum(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class CategoryBase(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None


class CategoryCreate(CategoryBase):
    pass


class CategoryUpdate(CategoryBase):
    pass


class Category(CategoryBase):
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class TagBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    slug: str = Field(min_length=1, max_length=100)


class TagCreate(TagBase):
    pass


class TagUpdate(TagBase):
    pass


class Tag(TagBase):
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class TaxonomyRef(BaseModel):
    name: str
    slug: str
    model_config = ConfigDict(from_attributes=True)


class PostAuthor(BaseModel):
    name: Optional[str] = None
    email: str
    model_config = ConfigDict(from_attributes=True)


class PostCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    slug: str = Field(min_length=1, max_length=300)
    content: str = Field(min_length=1)
    excerpt: Optional[str] = None
    featured_image: Optional[str] = None
    status: PostStatusEnum = PostStatusEnum.DRAFT
    category_id: Optional[uuid.UUID] = None
    tag_ids: List[uuid.UUID] = []


class PostUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=300)
    content: Optional[str] = Field(default=None, min_length=1)
    excerpt: Optional[str] = None
    featured_image: Optional[str] = None
    status: Optional[PostStatusEnum] = None
    category_id: Optional[uuid.UUID] = None
    tag_ids: Optional[List[uuid.UUID]] = None


class Post(BaseModel):
    id: uuid.UUID
    title: str
    slug: str
    content: str
    excerpt: Optional[str] = None
    featured_image: Optional[str] = None
    status: PostStatusEnum
    published_at: Optional[datetime] = None
    author_id: uuid.UUID
    category_id: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime
    author: Optional[PostAuthor] = None
    category: Optional[Category] = None
    tags: List[Tag] = []
    model_config = ConfigDict(from_attributes=True)


class PublicPost(BaseModel):
    id: uuid.UUID
    title: str
    slug: str
    content: str
    excerpt: Optional[str] = None
    featured_image: Optional[str] = None
    published_at: Optional[datetime] = None
    author: Optional[PostAuthor] = None
    category: Optional[TaxonomyRef] = None
    tags: List[TaxonomyRef] = []
    model_config = ConfigDict(from_attributes=True)


class DashboardStats(BaseModel):
    total_posts: int
    published_posts: int
    draft_posts: int
    archived_posts: int
    categories: int
    tags: int
    users: int
