"""
Utility script to generate and write the OpenAPI schema for the FastAPI app.

The app is built from the factory with in-memory storage and a throwaway
upload directory, so no database or upload folder is touched. The schema is
written to interfaces/openapi.json (or the path given on the command line)
so API clients and documentation tools can consume it without running the
server.

Usage:
    python -m todo_api.generate_openapi [output-path]
"""
from __future__ import annotations

import json
import logging
import os
import sys
import tempfile
from typing import Any, Dict, List, Optional

from .main import create_app, openapi_tags
from .settings import get_settings

logger = logging.getLogger(__name__)


def _ensure_tags(schema: Dict[str, Any]) -> None:
    """
    Ensure the OpenAPI schema contains the tags metadata declared in main.
    Existing tag definitions are kept.
    """
    existing_tags: List[Dict[str, Any]] = schema.get("tags", []) or []
    existing_names = {t.get("name") for t in existing_tags if isinstance(t, dict)}
    for tag in openapi_tags:
        if tag.get("name") not in existing_names:
            existing_tags.append(tag)
    if existing_tags:
        schema["tags"] = existing_tags


def build_schema() -> Dict[str, Any]:
    with tempfile.TemporaryDirectory() as upload_dir:
        app = create_app(
            get_settings({"PERSISTENCE_BACKEND": "memory", "UPLOAD_DIR": upload_dir, "LOG_LEVEL": "WARNING"})
        )
        schema = app.openapi()
    _ensure_tags(schema)
    return schema


# PUBLIC_INTERFACE
def generate_openapi(out_path: Optional[str] = None) -> str:
    """Write the OpenAPI schema file and return the written file path."""
    if out_path is None:
        out_path = os.path.join(os.getcwd(), "interfaces", "openapi.json")
    os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(build_schema(), f, indent=2, ensure_ascii=False)
    logger.info("Wrote OpenAPI schema to %s", out_path)
    return out_path


def main() -> None:
    path = generate_openapi(sys.argv[1] if len(sys.argv) > 1 else None)
    print(f"Wrote OpenAPI schema to: {path}")


if __name__ == "__main__":
    main()
