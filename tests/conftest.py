from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pytest
from fastapi.testclient import TestClient

from todo_api.main import create_app
from todo_api.settings import Settings, get_settings

PASSWORD = "secret123"


def make_settings(tmp_path: Path, **overrides: str) -> Settings:
    env = {
        "APP_ENV": "test",
        "PERSISTENCE_BACKEND": "memory",
        "SQLITE_DB_PATH": str(tmp_path / "todos.db"),
        "UPLOAD_DIR": str(tmp_path / "uploads"),
        "JWT_SECRET": "test-secret",
        "BCRYPT_ROUNDS": "4",
        "LOG_LEVEL": "WARNING",
    }
    env.update(overrides)
    return get_settings(env)


@pytest.fixture(params=["memory", "sqlite"])
def settings(request: pytest.FixtureRequest, tmp_path: Path) -> Settings:
    """
    Isolated settings per test, run once per storage backend.

    Uploads and the SQLite file live under tmp_path, and bcrypt runs at its
    lowest cost to keep the suite fast.
    """
    return make_settings(tmp_path, PERSISTENCE_BACKEND=request.param)


@pytest.fixture()
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    """Build test settings with env overrides, e.g. ``settings_factory(APP_ENV="production")``."""

    def _build(**overrides: str) -> Settings:
        return make_settings(tmp_path, **overrides)

    return _build


@pytest.fixture()
def client(settings: Settings) -> TestClient:
    return TestClient(create_app(settings))


@pytest.fixture()
def make_user(client: TestClient) -> Callable[..., Dict[str, Any]]:
    """
    Factory registering a user and returning
    ``{"token", "headers", "user", "password"}``.
    """

    def _make(username: str = "alice", email: Optional[str] = None, password: str = PASSWORD) -> Dict[str, Any]:
        res = client.post(
            "/api/auth/register",
            json={"username": username, "email": email or f"{username}@example.com", "password": password},
        )
        assert res.status_code == 201, res.text
        data = res.json()["data"]
        return {
            "token": data["token"],
            "headers": {"Authorization": f"Bearer {data['token']}"},
            "user": data["user"],
            "password": password,
        }

    return _make
