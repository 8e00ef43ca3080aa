import json
import logging

import pytest
from fastapi.testclient import TestClient

from todo_api.generate_openapi import generate_openapi
from todo_api.logging_setup import _AccessNoiseFilter, setup_logging
from todo_api.main import create_app
from todo_api.settings import get_settings


def boom():
    raise RuntimeError("boom")


class TestHealth:
    def test_health(self, client, settings):
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json() == {"success": True, "message": "Healthy", "backend": settings.persistence_backend}

    def test_welcome(self, client):
        body = client.get("/").json()
        assert body["success"] is True
        assert body["data"]["todos"] == "/api/todos"


class TestErrorEnvelopes:
    def test_unknown_route(self, client):
        res = client.get("/api/nope")
        assert res.status_code == 404
        assert res.json() == {"success": False, "message": "Route not found"}

    def test_wrong_method(self, client):
        res = client.post("/health")
        assert res.status_code == 405
        assert res.json()["success"] is False

    def test_unhandled_error_shows_detail_outside_production(self, settings_factory):
        app = create_app(settings_factory())
        app.add_api_route("/boom", boom)
        res = TestClient(app, raise_server_exceptions=False).get("/boom")
        assert res.status_code == 500
        assert res.json() == {"success": False, "message": "Internal server error", "error": "boom"}

    def test_unhandled_error_hides_detail_in_production(self, settings_factory):
        app = create_app(settings_factory(APP_ENV="production"))
        app.add_api_route("/boom", boom)
        res = TestClient(app, raise_server_exceptions=False).get("/boom")
        assert res.status_code == 500
        assert res.json() == {"success": False, "message": "Internal server error"}

    def test_query_validation_uses_envelope(self, client, make_user):
        alice = make_user()
        res = client.get("/api/todos", params={"page": "abc"}, headers=alice["headers"])
        assert res.status_code == 400
        body = res.json()
        assert body["success"] is False
        assert body["message"] == "Request validation failed"
        assert isinstance(body["error"], list)


class TestSettings:
    def test_defaults(self):
        s = get_settings({})
        assert s.app_env == "development"
        assert s.persistence_backend == "sqlite"
        assert s.jwt_expires_days == 30
        assert s.bcrypt_rounds == 12
        assert s.max_upload_bytes == 5 * 1024 * 1024
        assert (s.host, s.port) == ("0.0.0.0", 5000)
        assert s.cors_allow_origins == ["*"]
        assert s.jwt_secret

    def test_production_requires_secret(self):
        with pytest.raises(ValueError):
            get_settings({"APP_ENV": "production"})
        assert get_settings({"APP_ENV": "production", "JWT_SECRET": "s"}).is_production

    def test_unknown_values_fall_back(self):
        s = get_settings({"PERSISTENCE_BACKEND": "mongo", "PORT": "nope", "BCRYPT_ROUNDS": "2", "APP_ENV": "staging"})
        assert s.persistence_backend == "sqlite"
        assert s.port == 5000
        assert s.bcrypt_rounds == 12
        assert s.app_env == "development"

    def test_origins_list(self):
        s = get_settings({"CORS_ALLOW_ORIGINS": "http://a.test, http://b.test ,"})
        assert s.cors_allow_origins == ["http://a.test", "http://b.test"]


class TestLogging:
    def test_console_filter_levels(self):
        noise_filter = _AccessNoiseFilter()

        def passes(name, level):
            return noise_filter.filter(logging.LogRecord(name, level, __file__, 1, "msg", None, None))

        assert passes("todo_api.routers.todos", logging.DEBUG)
        assert not passes("uvicorn.access", logging.WARNING)
        assert passes("uvicorn.error", logging.INFO)
        assert not passes("uvicorn.error", logging.DEBUG)
        assert not passes("httpx", logging.INFO)
        assert passes("httpx", logging.WARNING)

    def test_repeated_setup_does_not_stack_handlers(self, tmp_path):
        root = logging.getLogger()
        log_file = tmp_path / "logs" / "app.log"
        setup_logging("INFO", log_file=log_file)
        setup_logging("INFO", log_file=log_file)
        installed = [h for h in root.handlers if getattr(h, "_todo_api_handler", False)]
        assert len(installed) == 2
        logging.getLogger("todo_api.test").info("hello file")
        for h in installed:
            h.flush()
        assert "hello file" in log_file.read_text(encoding="utf-8")
        setup_logging("WARNING")
        assert len([h for h in root.handlers if getattr(h, "_todo_api_handler", False)]) == 1


class TestOpenAPI:
    def test_generate_writes_schema(self, tmp_path):
        out = generate_openapi(str(tmp_path / "interfaces" / "openapi.json"))
        with open(out, encoding="utf-8") as f:
            schema = json.load(f)
        assert "/api/todos" in schema["paths"]
        assert "/api/user/profile-image" in schema["paths"]
        assert {t["name"] for t in schema["tags"]} >= {"health", "auth", "todos", "user"}
