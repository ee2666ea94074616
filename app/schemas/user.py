

import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models.user import AuthProvider


USERNAME_PATTERN = r"^[A-Za-z0-9_]+$"
PASSWORD_RULE = (
    "Password must contain at least one uppercase letter, one lowercase letter, "
    "one number and one special character"
)


def check_password_strength(password: str) -> str:
    """Require upper, lower, digit and special characters."""
    if not (
        re.search(r"[a-z]", password)
        and re.search(r"[A-Z]", password)
        and re.search(r"\d", password)
        and re.search(r"[^A-Za-z0-9]", password)
    ):
        raise ValueError(PASSWORD_RULE)
    return password


class CamelModel(BaseModel):
    """Base schema speaking camelCase JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(CamelModel):
    """Schema for local account registration."""
    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: EmailStr
    age: int = Field(ge=13, le=120)
    password: str = Field(min_length=8, max_length=128)
    confirm_password: str

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Password confirmation does not match password")
        return self


class LoginRequest(CamelModel):
    """
    Schema for local login.

    Email is not format-checked: provider placeholder addresses must reach
    the account lookup.
    """
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)


class UpdateProfileRequest(CamelModel):
    """Schema for profile updates; omitted fields are left unchanged."""
    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    email: Optional[EmailStr] = None
    age: Optional[int] = Field(default=None, ge=13, le=120)


class ChangePasswordRequest(CamelModel):
    """Schema for changing a local account's password."""
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8, max_length=128)
    confirm_new_password: str

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return check_password_strength(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_new_password:
            raise ValueError("Password confirmation does not match new password")
        return self


class UserResponse(CamelModel):
    """Public view of a user. Never includes the password hash."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    username: str
    first_name: str
    last_name: str
    email: str
    age: int
    provider: AuthProvider
    created_at: datetime
    updated_at: datetime


class AuthResponse(CamelModel):
    """Schema for authentication response with JWT."""
    message: str
    user: UserResponse
    token: str
    token_type: str = "bearer"


class ProfileResponse(CamelModel):
    message: str
    user: UserResponse


class MessageResponse(CamelModel):
    message: str


class AuthStatusResponse(CamelModel):
    """Who the caller is, if anyone."""
    authenticated: bool
    method: Optional[str] = None
    user: Optional[UserResponse] = None
