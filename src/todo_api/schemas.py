from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Generic, List, Mapping, Optional, Type, TypeVar, Union

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import ValidationError
from .models import TodoPriority, TodoStatus

T = TypeVar("T")

# Shared type for incoming due_date which can be a date, datetime, or ISO8601 string
DueDateInput = Union[date, datetime, str]

EMAIL_REGEX = re.compile(r"^[\w\.+-]+@[\w\.-]+\.\w+$")
MIN_PASSWORD_LENGTH = 6
# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


def _parse_due_date(value: Optional[DueDateInput]) -> Optional[datetime]:
    """
    Internal helper to normalize due_date input into an aware UTC datetime.
    - If value is a string, attempt to parse via datetime.fromisoformat; if time is missing, set to 00:00.
    - If value is a date (not datetime), convert to datetime at 00:00.
    - Naive datetimes are taken to be UTC.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day, 0, 0, 0)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(s)
        except ValueError:
            try:
                d = date.fromisoformat(s)
            except ValueError as e:
                raise ValueError(
                    "Invalid dueDate format. Use ISO8601 date or datetime string "
                    "(e.g., '2025-01-31' or '2025-01-31T13:45:00')."
                ) from e
            parsed = datetime(d.year, d.month, d.day, 0, 0, 0)
    else:
        raise ValueError("Invalid type for dueDate; expected date, datetime, or ISO8601 string.")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _clean_title(v: str) -> str:
    s = v.strip()
    if not (1 <= len(s) <= 200):
        raise ValueError("title length must be between 1 and 200 characters")
    return s


def _clean_username(v: str) -> str:
    s = v.strip()
    if not (3 <= len(s) <= 30):
        raise ValueError("Username must be between 3 and 30 characters")
    return s


def _clean_email(v: str) -> str:
    s = v.strip().lower()
    if not EMAIL_REGEX.match(s):
        raise ValueError("Please provide a valid email")
    return s


def check_new_password(password: str) -> str:
    """Enforce password length rules; return the password unchanged."""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long")
    return password


def validation_message(exc: pydantic.ValidationError) -> str:
    """First pydantic error as a single readable sentence."""
    errors = exc.errors()
    if not errors:
        return "Invalid input"
    first = errors[0]
    msg = str(first.get("msg", "Invalid input"))
    if msg.startswith("Value error, "):
        return msg[len("Value error, "):]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {msg}" if loc else msg


M = TypeVar("M", bound=BaseModel)


def parse_model(model: Type[M], data: Mapping[str, Any]) -> M:
    """
    Validate a payload that did not go through FastAPI's body parsing
    (form bodies, mixed JSON/form endpoints).

    Raises:
        ValidationError: with the first problem as message and the full
            pydantic error list as detail.
    """
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(validation_message(exc), detail=exc.errors(include_url=False)) from exc


class CamelModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---- auth / users ----


# PUBLIC_INTERFACE
class RegisterIn(CamelModel):
    """Registration payload (JSON body or multipart form fields)."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"username": "alice", "email": "alice@example.com", "password": "s3cret!"}
        }
    )

    username: str = Field(..., description="Unique login name (3..30 chars)")
    email: str = Field(..., description="Unique email address")
    password: str = Field(..., description="Password (min 6 chars)")

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        return _clean_username(v)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _clean_email(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return check_new_password(v)


# PUBLIC_INTERFACE
class LoginIn(CamelModel):
    """Login payload; ``identifier`` may be a username or an email."""

    identifier: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("identifier", "email", "username"),
        description="Username or email",
    )
    password: Optional[str] = Field(default=None, description="Account password")


# PUBLIC_INTERFACE
class ProfileUpdate(CamelModel):
    """
    Partial profile update. Blank values count as not provided.
    """

    username: Optional[str] = Field(default=None, description="New username")
    email: Optional[str] = Field(default=None, description="New email address")

    @field_validator("username", mode="before")
    @classmethod
    def validate_username(cls, v: Any) -> Optional[str]:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if not isinstance(v, str):
            raise ValueError("Username must be a string")
        return _clean_username(v)

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, v: Any) -> Optional[str]:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if not isinstance(v, str):
            raise ValueError("Email must be a string")
        return _clean_email(v)

    def changes(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        if self.username is not None:
            out["username"] = self.username
        if self.email is not None:
            out["email"] = self.email
        return out


class ChangePasswordIn(CamelModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None


class DeleteAccountIn(CamelModel):
    password: Optional[str] = None


# PUBLIC_INTERFACE
class UserOut(CamelModel):
    """
    Public view of a user. The password hash is not a field, so it can
    never be serialized.
    """

    id: int = Field(..., description="Unique identifier of the user")
    username: str
    email: str
    profile_image: str = Field(..., description="Stored image path relative to /uploads, or the default sentinel")
    created_at: datetime
    updated_at: datetime


class UserImageOut(UserOut):
    profile_image_url: str = Field(..., description="Absolute URL of the stored image")


class AuthOut(CamelModel):
    token: str = Field(..., description="Bearer token for the Authorization header")
    user: UserOut


# ---- todos ----


# PUBLIC_INTERFACE
class TodoCreate(CamelModel):
    """
    Schema for creating a new Todo item.
    """

    model_config = ConfigDict(
        use_enum_values=True,
        json_schema_extra={
            "example": {
                "title": "Buy groceries",
                "description": "Milk, eggs, bread",
                "priority": "high",
                "dueDate": "2025-02-01",
            }
        },
    )

    title: str = Field(..., description="Short title for the todo item", min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, description="Optional detailed description")
    priority: TodoPriority = Field(default=TodoPriority.MEDIUM, description="low, medium or high")
    due_date: Optional[datetime] = Field(
        default=None,
        description="Due date/time of the todo item. Accepts ISO8601 date or datetime; dates are set to 00:00 UTC",
    )

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """
        Strip whitespace and enforce 1..200 length.
        """
        return _clean_title(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v: Optional[DueDateInput]) -> Optional[datetime]:
        return _parse_due_date(v)


# PUBLIC_INTERFACE
class TodoUpdate(CamelModel):
    """
    Schema for updating an existing Todo item.
    All fields are optional; only provided fields will be updated.
    Sending ``dueDate: null`` clears the due date.
    """

    model_config = ConfigDict(
        use_enum_values=True,
        json_schema_extra={
            "example": {
                "title": "Buy groceries and supplies",
                "status": "completed",
                "dueDate": "2025-02-02T09:30:00",
            }
        },
    )

    title: Optional[str] = Field(default=None, description="Short title for the todo item", min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, description="Optional detailed description")
    status: Optional[TodoStatus] = Field(default=None, description="pending or completed")
    priority: Optional[TodoPriority] = Field(default=None, description="low, medium or high")
    due_date: Optional[datetime] = Field(default=None, description="Due date/time of the todo item")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _clean_title(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v: Optional[DueDateInput]) -> Optional[datetime]:
        return _parse_due_date(v)

    def changes(self) -> Dict[str, Any]:
        """Fields the client actually sent, keyed by storage name."""
        out: Dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name not in {"description", "due_date"}:
                continue
            out[name] = value
        return out


# PUBLIC_INTERFACE
class TodoOut(CamelModel):
    """
    Schema returned by the API for a Todo item.
    """

    id: int = Field(..., description="Unique identifier of the todo item")
    title: str
    description: Optional[str] = None
    status: TodoStatus
    priority: TodoPriority
    due_date: Optional[datetime] = None
    user_id: int = Field(..., description="Owning user's id")
    created_at: datetime
    updated_at: datetime


class TodoStatsOut(CamelModel):
    total_todos: int = 0
    completed_todos: int = 0
    pending_todos: int = 0
    high_priority_todos: int = 0
    medium_priority_todos: int = 0
    low_priority_todos: int = 0


class UserTodoStatsOut(TodoStatsOut):
    completion_rate: int = Field(0, description="Completed share of all todos, rounded percent")


class MemberOut(CamelModel):
    username: str
    email: str
    member_since: datetime
    days_since_registration: int


class UserStatsOut(CamelModel):
    user: MemberOut
    todo_stats: UserTodoStatsOut


# ---- envelopes ----


class Envelope(CamelModel, Generic[T]):
    """
    Uniform response shape: ``{success, data?, message?, error?}``.
    Routes set ``response_model_exclude_unset`` so absent keys stay absent.
    """

    success: bool
    message: Optional[str] = None
    data: Optional[T] = None
    error: Optional[Any] = None


class ListEnvelope(Envelope[List[T]], Generic[T]):
    count: int
    total_count: int
    total_pages: int
    current_page: int
