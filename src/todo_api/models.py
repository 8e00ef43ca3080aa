from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, TypedDict

DEFAULT_PROFILE_IMAGE = "default-profile.png"


class TodoStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class TodoPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Sort order used when listing by priority.
PRIORITY_RANK = {TodoPriority.LOW.value: 0, TodoPriority.MEDIUM.value: 1, TodoPriority.HIGH.value: 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
class UserEntity(TypedDict):
    """
    A stored user account.

    Fields:
    - id: Unique integer identifier
    - username: Unique login name
    - email: Unique, lower-cased email address
    - password_hash: bcrypt hash; never leaves the service
    - profile_image: Path relative to the upload root, or DEFAULT_PROFILE_IMAGE
    - created_at / updated_at: UTC timestamps
    """

    id: int
    username: str
    email: str
    password_hash: str
    profile_image: str
    created_at: datetime
    updated_at: datetime


# PUBLIC_INTERFACE
class TodoEntity(TypedDict):
    """
    A stored todo item owned by exactly one user.

    Fields:
    - id: Unique integer identifier
    - title: Short title (1..200 chars, trimmed on input via schemas)
    - description: Optional detailed description
    - status: 'pending' or 'completed'
    - priority: 'low', 'medium' or 'high'
    - due_date: Optional due datetime (UTC)
    - user_id: Owning user's id
    - created_at / updated_at: UTC timestamps
    """

    id: int
    title: str
    description: Optional[str]
    status: str
    priority: str
    due_date: Optional[datetime]
    user_id: int
    created_at: datetime
    updated_at: datetime


class TodoStatsEntity(TypedDict):
    total_todos: int
    completed_todos: int
    pending_todos: int
    high_priority_todos: int
    medium_priority_todos: int
    low_priority_todos: int


def empty_stats() -> TodoStatsEntity:
    return {
        "total_todos": 0,
        "completed_todos": 0,
        "pending_todos": 0,
        "high_priority_todos": 0,
        "medium_priority_todos": 0,
        "low_priority_todos": 0,
    }
