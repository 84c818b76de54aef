"""Shared data models for the build cache gateway."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, SecretStr, field_validator


class Role(str, Enum):
    """Access level bound to a credential."""

    READER = "reader"
    WRITER = "writer"

    def permits(self, required: "Role") -> bool:
        if required is Role.READER:
            return True
        return self is Role.WRITER


class UserCredential(BaseModel):
    """Username/password pair bound to exactly one role."""

    username: str
    password: SecretStr
    role: Role = Role.READER

    @field_validator("username")
    @classmethod
    def _require_username(cls, value: str) -> str:
        if not value:
            raise ValueError("username is required")
        return value

    @field_validator("password")
    @classmethod
    def _require_password(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("password is required")
        return value


class Identity(BaseModel):
    """Caller resolved by the access control gate for a single request."""

    model_config = {"frozen": True}

    username: str
    role: Role


class HealthStatus(BaseModel):
    """Body returned by the health endpoint."""

    status: str
    storage: str
    error: str | None = None
