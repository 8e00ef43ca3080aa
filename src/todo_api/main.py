from __future__ import annotations

import logging
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import AppError
from .logging_setup import setup_logging
from .repositories import get_repositories
from .routers import auth as auth_router
from .routers import todos as todos_router
from .routers import users as users_router
from .settings import Settings, get_settings
from .uploads import ImageStorage
from .utils import error_envelope

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {"name": "auth", "description": "Registration, login and the current account."},
    {
        "name": "todos",
        "description": "CRUD operations for the caller's todos with filtering, sorting, pagination and statistics.",
    },
    {"name": "user", "description": "Profile, profile image, password, statistics and account deletion."},
]


def _add_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        """Known application errors: the error's own status and message."""
        detail = jsonable_encoder(exc.detail) if exc.detail is not None else exc.error
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope(exc.message, detail),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """
        Return the envelope for request validation errors.

        Response format:
            {
                "success": false,
                "message": "Request validation failed",
                "error": [... pydantic/fastapi error details ...]
            }
        """
        return JSONResponse(
            status_code=400,
            content=error_envelope("Request validation failed", jsonable_encoder(exc.errors())),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Unmatched routes, wrong methods and other framework HTTP errors."""
        message = "Route not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope(message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Last resort. The underlying message is only exposed outside production."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = None if settings.is_production else str(exc)
        return JSONResponse(status_code=500, content=error_envelope("Internal server error", error))


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application from explicit settings.

    Wires storage, image storage, CORS, request logging, exception handlers,
    routers, static /uploads and the health endpoints. Everything handlers need
    is kept on ``app.state``.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, log_file=settings.log_file)

    app = FastAPI(
        title="Todo Backend",
        description="Authenticated per-user todo lists with profiles, image upload and statistics.",
        version="0.1.0",
        openapi_tags=openapi_tags,
    )

    user_repo, todo_repo = get_repositories(settings)
    image_storage = ImageStorage(settings.upload_dir, max_bytes=settings.max_upload_bytes)
    app.state.settings = settings
    app.state.user_repo = user_repo
    app.state.todo_repo = todo_repo
    app.state.image_storage = image_storage

    # Outside production every origin is allowed; production uses CORS_ALLOW_ORIGINS
    allow_all = (
        not settings.is_production
        or settings.cors_allow_origins == ["*"]
        or len(settings.cors_allow_origins) == 0
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_allow_origins,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s %s %.1f ms", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    _add_exception_handlers(app, settings)

    # PUBLIC_INTERFACE
    @app.get("/health", summary="Health Check", tags=["health"])
    def health_check():
        """
        Liveness probe.

        Returns:
            A JSON object indicating service health.
        """
        return {"success": True, "message": "Healthy", "backend": settings.persistence_backend}

    @app.get("/", summary="Welcome", tags=["health"])
    def index():
        """List the endpoint groups."""
        return {
            "success": True,
            "message": "Welcome to the Todo API",
            "data": {"auth": "/api/auth", "todos": "/api/todos", "user": "/api/user"},
        }

    app.include_router(auth_router.router)
    app.include_router(todos_router.router)
    app.include_router(users_router.router)

    app.mount("/uploads", StaticFiles(directory=str(image_storage.root)), name="uploads")

    logger.info("App created env=%s backend=%s uploads=%s", settings.app_env,
                settings.persistence_backend, image_storage.root)
    return app


# PUBLIC_INTERFACE
def run() -> None:
    """
    Serve the app with uvicorn on the configured host/port.

    Equivalent to: uvicorn --factory todo_api.main:create_app
    """
    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
