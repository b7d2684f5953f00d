"""
User data models for the Users Service.
"""

import json
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, Optional, List, Mapping
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import SerializationError, ValidationError

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Columns UpdateOne may touch; anything else is rejected before the store sees it
UPDATABLE_FIELDS = frozenset({"email", "username", "first_name", "last_name"})


@dataclass(frozen=True)
class User:
    """A user record as stored in the users table."""
    id: UUID
    email: str
    username: str
    first_name: str
    last_name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["id"] = str(self.id)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=UUID(data["id"]),
            email=data["email"],
            username=data["username"],
            first_name=data["first_name"],
            last_name=data["last_name"],
            is_active=bool(data["is_active"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    @classmethod
    def from_record(cls, row) -> "User":
        """Build from an asyncpg Record (or any mapping with the column names)."""
        return cls(
            id=row["id"],
            email=row["email"],
            username=row["username"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            is_active=row["is_active"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class NewUser:
    """Fields supplied by the caller when creating a user."""
    email: str
    username: str
    first_name: str
    last_name: str


@dataclass(frozen=True)
class UserChanges:
    """Partial update: one optional slot per updatable column. None means unchanged."""
    email: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @classmethod
    def from_mapping(cls, changes: Mapping[str, Any]) -> "UserChanges":
        """Build from a column -> value mapping, rejecting unknown columns and non-text values."""
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError("Fields cannot be updated", {"fields": unknown})
        invalid = sorted(
            column for column, value in changes.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            raise ValidationError("Fields must be non-empty strings", {"fields": invalid})
        return cls(**changes)

    def as_fields(self) -> Dict[str, str]:
        """The supplied slots as column -> value."""
        return {column: value for column, value in asdict(self).items() if value is not None}


def encode_user(user: User) -> bytes:
    return json.dumps(user.to_dict()).encode("utf-8")


def decode_user(payload: bytes) -> User:
    try:
        return User.from_dict(json.loads(payload))
    except (TypeError, ValueError, KeyError) as e:
        raise SerializationError("Cached user payload is unreadable", {"error": str(e)}) from e


def encode_users(users: List[User]) -> bytes:
    return json.dumps([user.to_dict() for user in users]).encode("utf-8")


def decode_users(payload: bytes) -> List[User]:
    try:
        items = json.loads(payload)
        if not isinstance(items, list):
            raise TypeError("expected a JSON array")
        return [User.from_dict(item) for item in items]
    except (TypeError, ValueError, KeyError) as e:
        raise SerializationError("Cached user list payload is unreadable", {"error": str(e)}) from e


class CreateUserRequest(BaseModel):
    """Request model for creating a user."""
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN, description="Unique among active users")
    username: str = Field(..., min_length=3, max_length=50)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)

    def to_draft(self) -> NewUser:
        return NewUser(
            email=self.email,
            username=self.username,
            first_name=self.first_name,
            last_name=self.last_name,
        )


class UpdateUserRequest(BaseModel):
    """Request model for a partial user update. Omitted fields stay unchanged."""
    model_config = ConfigDict(extra="forbid")

    email: Optional[str] = Field(None, max_length=255, pattern=EMAIL_PATTERN)
    username: Optional[str] = Field(None, min_length=3, max_length=50)
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)

    def to_changes(self) -> UserChanges:
        return UserChanges(**self.model_dump(exclude_none=True))


class UserResponse(BaseModel):
    """Response model for a single user."""
    id: UUID
    email: str
    username: str
    first_name: str
    last_name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**asdict(user))


class UserEnvelope(BaseModel):
    """``{"user": ...}`` wrapper."""
    user: UserResponse


class UserListResponse(BaseModel):
    """Response model for a page of users."""
    users: List[UserResponse]
    page: int
    limit: int
