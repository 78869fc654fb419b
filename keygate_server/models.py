"""
Pydantic models for the persisted record set and the management/portal API.

The persisted models (``User``, ``APIKey``, ``RecordSet``) use the same
snake_case field names as the on-disk JSON document, so serialization is a
plain ``model_dump_json`` / ``model_validate_json`` round trip.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    """Closed set of user roles."""
    OWNER = "owner"
    USER = "user"


class User(BaseModel):
    """Portal user. ``password_hash`` never leaves the process unsanitized."""

    id: str = Field(default="", description="Store-assigned identifier")
    username: str = Field(default="", description="Case-insensitively unique login name")
    password_hash: str = Field(default="", description="One-way password hash")
    role: str = Field(default="", description="owner or user")
    disabled: bool = False
    created_at: Optional[datetime] = None


class APIKey(BaseModel):
    """
    API credential with its quota settings.

    ``total_limit`` and ``concurrency_limit`` use 0 for "unlimited".
    ``used_count`` only grows through traffic; it is lowered by an explicit
    administrative reset alone.
    """

    id: str = Field(default="", description="Store-assigned identifier")
    key: str = Field(default="", description="The credential string itself")
    label: str = ""
    user_id: str = Field(default="", description="Owning user, empty for unowned keys")
    enabled: bool = False
    total_limit: int = Field(default=0, description="Lifetime request limit, 0 = unlimited")
    used_count: int = Field(default=0, description="Cumulative counted requests")
    concurrency_limit: int = Field(default=0, description="Max in-flight requests, 0 = unlimited")
    compatibility_mode: bool = Field(
        default=False,
        description="Accept the key from query parameters and X-Goog-Api-Key"
    )
    created_at: Optional[datetime] = None


class RecordSet(BaseModel):
    """The single persisted aggregate."""

    version: int = 1
    updated_at: Optional[datetime] = None
    users: List[User] = Field(default_factory=list)
    api_keys: List[APIKey] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def null_version(cls, v):
        return 1 if v is None else v

    @field_validator("version")
    @classmethod
    def normalize_version(cls, v: int) -> int:
        """Missing, null, zero or negative versions load as 1."""
        return v if v >= 1 else 1

    @field_validator("users", "api_keys", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        return [] if v is None else v


def sanitize_user(user: User) -> User:
    """Copy of ``user`` with the password hash blanked."""
    return user.model_copy(update={"password_hash": ""})


# Management / portal request and response schemas

class UserUpsertRequest(BaseModel):
    """Partial user patch. Omitted fields keep their current value."""
    id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    disabled: Optional[bool] = None


class APIKeyUpsertRequest(BaseModel):
    """Partial API key patch. Omitted fields keep their current value."""
    id: Optional[str] = None
    key: Optional[str] = None
    label: Optional[str] = None
    user_id: Optional[str] = None
    enabled: Optional[bool] = None
    total_limit: Optional[int] = None
    concurrency_limit: Optional[int] = None
    compatibility_mode: Optional[bool] = None
    reset_usage: bool = False


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=1)


class KeyUsage(BaseModel):
    """Quota view of a single key."""
    id: str
    key: str
    label: str
    user_id: str
    total_limit: int
    used_count: int
    remaining: int
    concurrency_limit: int
    in_flight: int
    compatibility_mode: bool

    @classmethod
    def from_key(cls, key: APIKey, in_flight: int = 0) -> "KeyUsage":
        remaining = 0
        if key.total_limit > 0:
            remaining = max(key.total_limit - key.used_count, 0)
        return cls(
            id=key.id,
            key=key.key,
            label=key.label,
            user_id=key.user_id,
            total_limit=key.total_limit,
            used_count=key.used_count,
            remaining=remaining,
            concurrency_limit=key.concurrency_limit,
            in_flight=in_flight,
            compatibility_mode=key.compatibility_mode,
        )
