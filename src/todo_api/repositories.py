from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import RLock
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import conflict_for_field
from .models import (
    DEFAULT_PROFILE_IMAGE,
    PRIORITY_RANK,
    TodoPriority,
    TodoEntity,
    TodoStatsEntity,
    TodoStatus,
    UserEntity,
    empty_stats,
    utcnow,
)
from .schemas import TodoCreate
from .settings import Settings

logger = logging.getLogger(__name__)

# Wire name -> storage field for sortable columns.
SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "dueDate": "due_date",
    "priority": "priority",
    "title": "title",
    "status": "status",
}
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class ListQuery:
    """
    Query parameters for listing one user's todos.
    """
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    status: Optional[str] = None
    priority: Optional[str] = None
    search: Optional[str] = None
    sort_field: str = "created_at"
    descending: bool = True

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


# PUBLIC_INTERFACE
def build_list_query(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
) -> ListQuery:
    """
    Normalize raw query parameters.

    - page/limit are clamped to positive integers (limit capped at MAX_PAGE_SIZE)
    - without sort_by the default is newest created first
    - with sort_by, 'desc' sorts descending and anything else ascending
    - an unknown sort_by falls back to the default
    """
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else DEFAULT_PAGE_SIZE
    limit = min(limit, MAX_PAGE_SIZE)

    sort_field, descending = "created_at", True
    if sort_by:
        field = SORT_FIELDS.get(sort_by.strip())
        if field is not None:
            sort_field = field
            descending = (sort_order or "").strip().lower() == "desc"

    return ListQuery(
        page=page,
        limit=limit,
        status=status,
        priority=priority,
        search=search.strip() if search and search.strip() else None,
        sort_field=sort_field,
        descending=descending,
    )


# PUBLIC_INTERFACE
class UserRepository(ABC):
    """
    Abstract contract for user account storage.

    Implementations enforce username/email uniqueness themselves and raise
    ConflictError on violation; callers' pre-checks are only a fast path.
    """

    @abstractmethod
    def create(self, username: str, email: str, password_hash: str,
               profile_image: str = DEFAULT_PROFILE_IMAGE) -> UserEntity:
        """Create and return a new user. Raises ConflictError on a taken username/email."""

    @abstractmethod
    def get(self, user_id: int) -> Optional[UserEntity]:
        """Return a user by id, or None."""

    @abstractmethod
    def find_by_login(self, identifier: str) -> Optional[UserEntity]:
        """
        Return the user whose username or email equals ``identifier``.
        An identifier containing '@' matches an email before a username.
        """

    @abstractmethod
    def find_conflict(self, username: Optional[str] = None, email: Optional[str] = None,
                      exclude_id: Optional[int] = None) -> Optional[str]:
        """Return 'username' or 'email' if another user holds that value, else None."""

    @abstractmethod
    def update(self, user_id: int, changes: Mapping[str, Any]) -> Optional[UserEntity]:
        """Apply ``changes`` and return the updated user, or None if missing. Raises ConflictError."""

    @abstractmethod
    def delete(self, user_id: int) -> bool:
        """Delete a user. Return True if deleted."""


# PUBLIC_INTERFACE
class TodoRepository(ABC):
    """
    Abstract contract for todo storage. Every operation is scoped by owner:
    a todo that exists but belongs to someone else behaves as missing.
    """

    @abstractmethod
    def create(self, user_id: int, data: TodoCreate) -> TodoEntity:
        """Create and return a pending todo owned by ``user_id``."""

    @abstractmethod
    def get(self, user_id: int, todo_id: int) -> Optional[TodoEntity]:
        """Return an owned todo, or None."""

    @abstractmethod
    def update(self, user_id: int, todo_id: int, changes: Mapping[str, Any]) -> Optional[TodoEntity]:
        """Apply only the given fields. Return the updated todo or None if not owned/missing."""

    @abstractmethod
    def delete(self, user_id: int, todo_id: int) -> bool:
        """Delete an owned todo. Return True if deleted."""

    @abstractmethod
    def delete_for_user(self, user_id: int) -> int:
        """Delete every todo of a user. Return how many were removed."""

    @abstractmethod
    def list(self, user_id: int, query: Optional[ListQuery] = None) -> Tuple[List[TodoEntity], int]:
        """
        Return one page of a user's todos and the total count matching filters.
        - Filter by status and priority, substring search on title/description
        - Sorting per ListQuery, ties broken by id in the same direction
        """

    @abstractmethod
    def stats(self, user_id: int) -> TodoStatsEntity:
        """Counts by status and priority for one user; zeroed when empty."""

    def set_status(self, user_id: int, todo_id: int, status: TodoStatus) -> Optional[TodoEntity]:
        return self.update(user_id, todo_id, {"status": status.value})


_USER_FIELDS = {"username", "email", "password_hash", "profile_image"}
_TODO_FIELDS = {"title", "description", "status", "priority", "due_date"}


class InMemoryUserRepository(UserRepository):
    """
    Thread-safe in-memory user store suitable for testing.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: Dict[int, UserEntity] = {}
        self._next_id = 1

    def _taken(self, field: str, value: str, exclude_id: Optional[int]) -> bool:
        return any(u[field] == value and u["id"] != exclude_id for u in self._items.values())

    def _check_unique(self, username: Optional[str], email: Optional[str], exclude_id: Optional[int]) -> None:
        conflict = self.find_conflict(username, email, exclude_id)
        if conflict:
            raise conflict_for_field(conflict)

    def create(self, username: str, email: str, password_hash: str,
               profile_image: str = DEFAULT_PROFILE_IMAGE) -> UserEntity:
        now = utcnow()
        with self._lock:
            self._check_unique(username, email, None)
            entity: UserEntity = {
                "id": self._next_id,
                "username": username,
                "email": email,
                "password_hash": password_hash,
                "profile_image": profile_image,
                "created_at": now,
                "updated_at": now,
            }
            self._next_id += 1
            self._items[entity["id"]] = entity
            return entity.copy()

    def get(self, user_id: int) -> Optional[UserEntity]:
        with self._lock:
            item = self._items.get(user_id)
            return None if item is None else item.copy()

    def find_by_login(self, identifier: str) -> Optional[UserEntity]:
        ident = identifier.strip()
        # An identifier with '@' is an email first; usernames may contain '@' too.
        fields = ("email", "username") if "@" in ident else ("username", "email")
        with self._lock:
            for field in fields:
                value = ident.lower() if field == "email" else ident
                for u in self._items.values():
                    if u[field] == value:  # type: ignore[literal-required]
                        return u.copy()
        return None

    def find_conflict(self, username: Optional[str] = None, email: Optional[str] = None,
                      exclude_id: Optional[int] = None) -> Optional[str]:
        with self._lock:
            if username is not None and self._taken("username", username, exclude_id):
                return "username"
            if email is not None and self._taken("email", email, exclude_id):
                return "email"
        return None

    def update(self, user_id: int, changes: Mapping[str, Any]) -> Optional[UserEntity]:
        with self._lock:
            existing = self._items.get(user_id)
            if existing is None:
                return None
            self._check_unique(changes.get("username"), changes.get("email"), user_id)
            updated = existing.copy()
            for key, value in changes.items():
                if key in _USER_FIELDS:
                    updated[key] = value  # type: ignore[literal-required]
            updated["updated_at"] = utcnow()
            self._items[user_id] = updated
            return updated.copy()

    def delete(self, user_id: int) -> bool:
        with self._lock:
            return self._items.pop(user_id, None) is not None


class InMemoryTodoRepository(TodoRepository):
    """
    Thread-safe in-memory todo store suitable for testing.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: Dict[int, TodoEntity] = {}
        self._next_id = 1

    def _owned(self, user_id: int, todo_id: int) -> Optional[TodoEntity]:
        item = self._items.get(todo_id)
        if item is None or item["user_id"] != user_id:
            return None
        return item

    def create(self, user_id: int, data: TodoCreate) -> TodoEntity:
        now = utcnow()
        with self._lock:
            entity: TodoEntity = {
                "id": self._next_id,
                "title": data.title,
                "description": data.description,
                "status": TodoStatus.PENDING.value,
                "priority": TodoPriority(data.priority).value,
                "due_date": data.due_date,
                "user_id": user_id,
                "created_at": now,
                "updated_at": now,
            }
            self._next_id += 1
            self._items[entity["id"]] = entity
            return entity.copy()

    def get(self, user_id: int, todo_id: int) -> Optional[TodoEntity]:
        with self._lock:
            item = self._owned(user_id, todo_id)
            return None if item is None else item.copy()

    def update(self, user_id: int, todo_id: int, changes: Mapping[str, Any]) -> Optional[TodoEntity]:
        with self._lock:
            existing = self._owned(user_id, todo_id)
            if existing is None:
                return None
            updated = existing.copy()
            for key, value in changes.items():
                if key in _TODO_FIELDS:
                    updated[key] = value  # type: ignore[literal-required]
            updated["updated_at"] = utcnow()
            self._items[todo_id] = updated
            return updated.copy()

    def delete(self, user_id: int, todo_id: int) -> bool:
        with self._lock:
            if self._owned(user_id, todo_id) is None:
                return False
            del self._items[todo_id]
            return True

    def delete_for_user(self, user_id: int) -> int:
        with self._lock:
            doomed = [tid for tid, t in self._items.items() if t["user_id"] == user_id]
            for tid in doomed:
                del self._items[tid]
            return len(doomed)

    def list(self, user_id: int, query: Optional[ListQuery] = None) -> Tuple[List[TodoEntity], int]:
        q = query or ListQuery()
        with self._lock:
            items: Iterable[TodoEntity] = [t for t in self._items.values() if t["user_id"] == user_id]

            if q.status is not None:
                items = [t for t in items if t["status"] == q.status]
            if q.priority is not None:
                items = [t for t in items if t["priority"] == q.priority]
            if q.search:
                s = q.search.lower()
                items = [
                    t for t in items
                    if s in t["title"].lower() or s in (t["description"] or "").lower()
                ]

            items = list(items)
            total = len(items)

            field = q.sort_field

            def sort_key(t: TodoEntity) -> tuple:
                value = t[field]  # type: ignore[literal-required]
                if field == "priority":
                    value = PRIORITY_RANK.get(value, 0)
                elif field == "title":
                    value = value.lower()
                # None sorts lowest, as in SQLite
                return (value is not None, value, t["id"])

            items_sorted = sorted(items, key=sort_key, reverse=q.descending)
            page = items_sorted[q.offset:q.offset + q.limit]
            return [t.copy() for t in page], total

    def stats(self, user_id: int) -> TodoStatsEntity:
        result = empty_stats()
        with self._lock:
            for t in self._items.values():
                if t["user_id"] != user_id:
                    continue
                result["total_todos"] += 1
                result[f"{t['status']}_todos"] += 1  # type: ignore[literal-required]
                result[f"{t['priority']}_priority_todos"] += 1  # type: ignore[literal-required]
        return result


# PUBLIC_INTERFACE
def get_repositories(settings: Settings) -> Tuple[UserRepository, TodoRepository]:
    """
    Build the configured user and todo repositories.
    - memory: in-memory stores (state is lost on restart)
    - sqlite: SQLite stores sharing one database file
    """
    if settings.persistence_backend == "sqlite":
        from .db import SQLiteDatabase, SQLiteTodoRepository, SQLiteUserRepository

        database = SQLiteDatabase(settings.sqlite_db_path)
        logger.info("Using SQLite persistence at %s", settings.sqlite_db_path)
        return SQLiteUserRepository(database), SQLiteTodoRepository(database)
    logger.info("Using in-memory persistence")
    return InMemoryUserRepository(), InMemoryTodoRepository()
