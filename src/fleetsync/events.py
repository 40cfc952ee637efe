"""Normalized events crossing the adapter boundary.

Change feeds and auth providers convert whatever they receive into these
models. Only the realtime bridge and the invalidation manager consume them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A change notification for one record of a resource."""

    model_config = ConfigDict(frozen=True)

    resource: str = Field(..., description="Resource (table) name")
    operation: Operation
    record: dict[str, Any] = Field(default_factory=dict, description="New row, if any")
    old_record: dict[str, Any] = Field(default_factory=dict, description="Previous row, if any")
    committed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("resource")
    @classmethod
    def _normalize_resource(cls, value: str) -> str:
        resource = value.strip()
        if not resource:
            raise ValueError("resource must be non-empty")
        return resource

    @field_validator("operation", mode="before")
    @classmethod
    def _upper_operation(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class AuthEventKind(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    ROLE_CHANGED = "ROLE_CHANGED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    principal: str
    access_token: str = ""
    roles: tuple[str, ...] = ()
    expires_at: datetime | None = None


class AuthEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: AuthEventKind
    principal: str | None = None
