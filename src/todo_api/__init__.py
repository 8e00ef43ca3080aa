"""
FastAPI Todo Backend package.

Build the application with ``todo_api.main.create_app(settings)``; serve it
with ``todo-backend`` or ``uvicorn --factory todo_api.main:create_app``.
"""

__version__ = "0.1.0"
