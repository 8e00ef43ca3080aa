from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union


# PUBLIC_INTERFACE
def envelope(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """
    Build a success envelope holding only the keys that were provided.

    Args:
        data: Payload for the ``data`` key (omitted when None).
        message: Human readable note for the ``message`` key (omitted when None).

    Returns:
        Dict with ``success`` plus any of ``data`` / ``message``.
    """
    out: Dict[str, Any] = {"success": True}
    if message is not None:
        out["message"] = message
    if data is not None:
        out["data"] = data
    return out


# PUBLIC_INTERFACE
def error_envelope(message: str, error: Any = None) -> Dict[str, Any]:
    """Failure envelope: ``success`` false, a message, and optional error detail."""
    out: Dict[str, Any] = {"success": False, "message": message}
    if error is not None:
        out["error"] = error
    return out


# PUBLIC_INTERFACE
def pagination_envelope(
    items: Union[Sequence[Any], Iterable[Any]],
    total: int,
    page: int,
    limit: int,
) -> Dict[str, Any]:
    """
    Build the envelope for list endpoints.

    Args:
        items: The list/iterable of items for the current page.
        total: Total number of items that match the query (ignoring pagination).
        page: The 1-based page that was returned.
        limit: The page size used.

    Returns:
        Dict with keys: success, count, totalCount, totalPages, currentPage, data.
    """
    materialized: List[Any] = list(items) if not isinstance(items, list) else items
    limit = max(int(limit), 1)
    return {
        "success": True,
        "count": len(materialized),
        "totalCount": int(total),
        "totalPages": math.ceil(int(total) / limit),
        "currentPage": int(page),
        "data": materialized,
    }
