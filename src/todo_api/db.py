from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, List, Mapping, Optional, Tuple

from .errors import ConflictError, conflict_for_field
from .models import (
    DEFAULT_PROFILE_IMAGE,
    TodoEntity,
    TodoPriority,
    TodoStatsEntity,
    TodoStatus,
    UserEntity,
    empty_stats,
    utcnow,
)
from .repositories import ListQuery, TodoRepository, UserRepository
from .schemas import TodoCreate

logger = logging.getLogger(__name__)

_USER_COLUMNS = ("username", "email", "password_hash", "profile_image")
_TODO_COLUMNS = ("title", "description", "status", "priority", "due_date")

_ORDER_EXPR = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "due_date": "due_date",
    "title": "py_lower(title)",
    "status": "status",
    "priority": "CASE priority WHEN 'low' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END",
}


def _fmt_dt(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _py_lower(value: Optional[str]) -> Optional[str]:
    # SQLite's own lower(), LIKE and NOCASE only fold ASCII letters.
    return value.lower() if isinstance(value, str) else value


class SQLiteDatabase:
    """
    One SQLite file holding the users and todos tables.

    Each operation opens its own connection. Username and email carry UNIQUE
    constraints, and todos reference users with ON DELETE CASCADE.
    """

    def __init__(self, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        self._init_db()

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.create_function("py_lower", 1, _py_lower, deterministic=True)
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self.connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    profile_image TEXT NOT NULL DEFAULT '{DEFAULT_PROFILE_IMAGE}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS todos (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    due_date TEXT NULL,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_todos_user_created ON todos(user_id, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_todos_user_status ON todos(user_id, status)")


def _conflict_from_integrity(exc: sqlite3.IntegrityError) -> ConflictError:
    """Translate 'UNIQUE constraint failed: users.<column>' into a ConflictError."""
    text = str(exc)
    if "users.email" in text:
        return conflict_for_field("email")
    return conflict_for_field("username")


class SQLiteUserRepository(UserRepository):
    """
    SQLite user store. The UNIQUE constraints are the source of truth for
    username/email uniqueness.
    """

    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> UserEntity:
        return {
            "id": int(row["id"]),
            "username": str(row["username"]),
            "email": str(row["email"]),
            "password_hash": str(row["password_hash"]),
            "profile_image": str(row["profile_image"]),
            "created_at": _parse_dt(row["created_at"]),  # type: ignore
            "updated_at": _parse_dt(row["updated_at"]),  # type: ignore
        }

    def create(self, username: str, email: str, password_hash: str,
               profile_image: str = DEFAULT_PROFILE_IMAGE) -> UserEntity:
        now = _fmt_dt(utcnow())
        try:
            with self._db.connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO users (username, email, password_hash, profile_image, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (username, email, password_hash, profile_image, now, now),
                )
                row = conn.execute("SELECT * FROM users WHERE id = ?", (cur.lastrowid,)).fetchone()
        except sqlite3.IntegrityError as exc:
            raise _conflict_from_integrity(exc) from exc
        assert row is not None
        return self._row_to_entity(row)

    def get(self, user_id: int) -> Optional[UserEntity]:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._row_to_entity(row) if row else None

    def find_by_login(self, identifier: str) -> Optional[UserEntity]:
        ident = identifier.strip()
        # An identifier with '@' is an email first; usernames may contain '@' too.
        email_first = 1 if "@" in ident else 0
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM users WHERE username = ? OR email = ?
                ORDER BY CASE WHEN email = ? THEN ? ELSE 1 - ? END DESC
                LIMIT 1
                """,
                (ident, ident.lower(), ident.lower(), email_first, email_first),
            ).fetchone()
            return self._row_to_entity(row) if row else None

    def find_conflict(self, username: Optional[str] = None, email: Optional[str] = None,
                      exclude_id: Optional[int] = None) -> Optional[str]:
        exclude = -1 if exclude_id is None else exclude_id
        with self._db.connect() as conn:
            if username is not None and conn.execute(
                "SELECT 1 FROM users WHERE username = ? AND id != ?", (username, exclude)
            ).fetchone():
                return "username"
            if email is not None and conn.execute(
                "SELECT 1 FROM users WHERE email = ? AND id != ?", (email, exclude)
            ).fetchone():
                return "email"
        return None

    def update(self, user_id: int, changes: Mapping[str, Any]) -> Optional[UserEntity]:
        cols = [c for c in _USER_COLUMNS if c in changes]
        assignments = ", ".join(f"{c} = ?" for c in [*cols, "updated_at"])
        params = [changes[c] for c in cols] + [_fmt_dt(utcnow()), user_id]
        try:
            with self._db.connect() as conn:
                cur = conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", params)
                if cur.rowcount == 0:
                    return None
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        except sqlite3.IntegrityError as exc:
            raise _conflict_from_integrity(exc) from exc
        return self._row_to_entity(row) if row else None

    def delete(self, user_id: int) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cur.rowcount > 0


class SQLiteTodoRepository(TodoRepository):
    """
    SQLite todo store. Every statement filters on user_id.
    """

    def __init__(self, database: SQLiteDatabase) -> None:
        self._db = database

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> TodoEntity:
        return {
            "id": int(row["id"]),
            "title": str(row["title"]),
            "description": row["description"],
            "status": str(row["status"]),
            "priority": str(row["priority"]),
            "due_date": _parse_dt(row["due_date"]),
            "user_id": int(row["user_id"]),
            "created_at": _parse_dt(row["created_at"]),  # type: ignore
            "updated_at": _parse_dt(row["updated_at"]),  # type: ignore
        }

    @staticmethod
    def _select_owned(conn: sqlite3.Connection, user_id: int, todo_id: int) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM todos WHERE id = ? AND user_id = ?", (todo_id, user_id)
        ).fetchone()

    def create(self, user_id: int, data: TodoCreate) -> TodoEntity:
        now = _fmt_dt(utcnow())
        with self._db.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO todos (title, description, status, priority, due_date, user_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data.title,
                    data.description,
                    TodoStatus.PENDING.value,
                    TodoPriority(data.priority).value,
                    _fmt_dt(data.due_date),
                    user_id,
                    now,
                    now,
                ),
            )
            row = self._select_owned(conn, user_id, int(cur.lastrowid))
            assert row is not None
            return self._row_to_entity(row)

    def get(self, user_id: int, todo_id: int) -> Optional[TodoEntity]:
        with self._db.connect() as conn:
            row = self._select_owned(conn, user_id, todo_id)
            return self._row_to_entity(row) if row else None

    def update(self, user_id: int, todo_id: int, changes: Mapping[str, Any]) -> Optional[TodoEntity]:
        cols = [c for c in _TODO_COLUMNS if c in changes]
        values = [_fmt_dt(changes[c]) if c == "due_date" else changes[c] for c in cols]
        assignments = ", ".join(f"{c} = ?" for c in [*cols, "updated_at"])
        with self._db.connect() as conn:
            cur = conn.execute(
                f"UPDATE todos SET {assignments} WHERE id = ? AND user_id = ?",
                [*values, _fmt_dt(utcnow()), todo_id, user_id],
            )
            if cur.rowcount == 0:
                return None
            row = self._select_owned(conn, user_id, todo_id)
            return self._row_to_entity(row) if row else None

    def delete(self, user_id: int, todo_id: int) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute("DELETE FROM todos WHERE id = ? AND user_id = ?", (todo_id, user_id))
            return cur.rowcount > 0

    def delete_for_user(self, user_id: int) -> int:
        with self._db.connect() as conn:
            cur = conn.execute("DELETE FROM todos WHERE user_id = ?", (user_id,))
            return cur.rowcount

    def list(self, user_id: int, query: Optional[ListQuery] = None) -> Tuple[List[TodoEntity], int]:
        q = query or ListQuery()
        clauses = ["user_id = ?"]
        params: list = [user_id]

        if q.status is not None:
            clauses.append("status = ?")
            params.append(q.status)
        if q.priority is not None:
            clauses.append("priority = ?")
            params.append(q.priority)
        if q.search:
            escaped = q.search.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            like = f"%{escaped}%"
            clauses.append("(py_lower(title) LIKE ? ESCAPE '\\' OR py_lower(description) LIKE ? ESCAPE '\\')")
            params.extend([like, like])

        where_sql = f"WHERE {' AND '.join(clauses)}"
        direction = "DESC" if q.descending else "ASC"
        order_expr = _ORDER_EXPR.get(q.sort_field, "created_at")
        order_sql = f"ORDER BY {order_expr} {direction}, id {direction}"

        with self._db.connect() as conn:
            count_row = conn.execute(f"SELECT COUNT(*) AS cnt FROM todos {where_sql}", params).fetchone()
            total = int(count_row["cnt"]) if count_row else 0
            rows = conn.execute(
                f"SELECT * FROM todos {where_sql} {order_sql} LIMIT ? OFFSET ?",
                [*params, q.limit, q.offset],
            ).fetchall()
            return [self._row_to_entity(r) for r in rows], total

    def stats(self, user_id: int) -> TodoStatsEntity:
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_todos,
                    SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed_todos,
                    SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending_todos,
                    SUM(CASE WHEN priority = 'high' THEN 1 ELSE 0 END) AS high_priority_todos,
                    SUM(CASE WHEN priority = 'medium' THEN 1 ELSE 0 END) AS medium_priority_todos,
                    SUM(CASE WHEN priority = 'low' THEN 1 ELSE 0 END) AS low_priority_todos
                FROM todos WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        result = empty_stats()
        if row is None:
            return result
        for key in result:
            result[key] = int(row[key] or 0)  # type: ignore[literal-required]
        return result
