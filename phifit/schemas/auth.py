from __future__ import annotations
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from uuid import UUID
from datetime import datetime

class RegisterRequest(BaseModel):
    email: EmailStr
    display_name: str = Field(min_length=2, max_length=80)
    pin: str = Field(pattern=r"^\d{4,6}$", description="4-6 digits")

    @field_validator("email")
    @classmethod
    def lower(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("display_name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Display name must be at least 2 characters")
        return v

class LoginRequest(BaseModel):
    email: EmailStr
    pin: str = Field(pattern=r"^\d{4,6}$")

    @field_validator("email")
    @classmethod
    def lower(cls, v: str) -> str:
        return v.strip().lower()

class RefreshRequest(BaseModel):
    refresh: str

class UserPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: EmailStr
    display_name: str
    created_at: datetime
    last_login_at: datetime | None = None

class TokenPair(BaseModel):
    access: str
    refresh: str

class LoginResponse(TokenPair):
    user: UserPublic
