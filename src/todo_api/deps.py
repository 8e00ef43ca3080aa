from __future__ import annotations

from fastapi import Request

from .repositories import TodoRepository, UserRepository
from .settings import Settings
from .uploads import ImageStorage


# Everything below lives on app.state, set once by main.create_app.

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_user_repo(request: Request) -> UserRepository:
    return request.app.state.user_repo


def get_todo_repo(request: Request) -> TodoRepository:
    return request.app.state.todo_repo


def get_image_storage(request: Request) -> ImageStorage:
    return request.app.state.image_storage
