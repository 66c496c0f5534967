import uuid
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cms.utils.role_permissions import RoleEnum


class UserBase(BaseModel):
    email: str
    name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return value


class UserCreate(UserBase):
    password: str = Field(min_length=6)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class User(UserBase):
    id: uuid.UUID
    role: RoleEnum
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class SessionUser(BaseModel):
    """The identity carried by a session; what ``/auth/me`` returns."""
    id: str
    email: str
    name: Optional[str] = None
    role: RoleEnum


class LoginResponse(BaseModel):
    user: SessionUser
    token: str


class RegisterResponse(BaseModel):
    message: str
    user: SessionUser
