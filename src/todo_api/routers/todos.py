from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from ..deps import get_todo_repo
from ..errors import NotFoundError
from ..models import TodoEntity, TodoPriority, TodoStatus, UserEntity
from ..repositories import TodoRepository, build_list_query
from ..schemas import Envelope, ListEnvelope, TodoCreate, TodoOut, TodoStatsOut, TodoUpdate
from ..security import get_current_user
from ..utils import envelope, pagination_envelope

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/todos",
    tags=["todos"],
    dependencies=[Depends(get_current_user)],
)

_NOT_FOUND = "Todo not found"


def _found(item: Optional[TodoEntity]) -> TodoOut:
    # Someone else's todo is reported exactly like a missing one.
    if item is None:
        raise NotFoundError(_NOT_FOUND)
    return TodoOut.model_validate(item)


# PUBLIC_INTERFACE
@router.get(
    "",
    response_model=ListEnvelope[TodoOut],
    response_model_exclude_unset=True,
    summary="List Todos",
    description=(
        "List the caller's todos with optional filters and pagination.\n\n"
        "Query parameters:\n"
        "- status: pending or completed\n"
        "- priority: low, medium or high\n"
        "- search: substring match on title/description\n"
        "- sortBy: createdAt, updatedAt, dueDate, priority, title, status\n"
        "- sortOrder: 'desc' for descending, anything else ascending\n"
        "- page / limit: 1-based page and page size (default 1 / 10, limit max 100)\n\n"
        "Without sortBy, todos come newest first."
    ),
)
def list_todos(
    status_filter: Optional[TodoStatus] = Query(None, alias="status", description="Filter by status"),
    priority: Optional[TodoPriority] = Query(None, description="Filter by priority"),
    search: Optional[str] = Query(None, description="Search text for title/description"),
    sort_by: Optional[str] = Query(None, alias="sortBy", description="Field to sort by"),
    sort_order: Optional[str] = Query(None, alias="sortOrder", description="'asc' or 'desc'"),
    page: Optional[int] = Query(None, description="1-based page number"),
    limit: Optional[int] = Query(None, description="Page size"),
    user: UserEntity = Depends(get_current_user),
    repo: TodoRepository = Depends(get_todo_repo),
) -> dict:
    query = build_list_query(
        page=page,
        limit=limit,
        status=status_filter.value if status_filter else None,
        priority=priority.value if priority else None,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    items, total = repo.list(user["id"], query)
    return pagination_envelope(
        items=[TodoOut.model_validate(it) for it in items],
        total=total,
        page=query.page,
        limit=query.limit,
    )


# PUBLIC_INTERFACE
@router.post(
    "",
    response_model=Envelope[TodoOut],
    response_model_exclude_unset=True,
    status_code=status.HTTP_201_CREATED,
    summary="Create Todo",
    description="Create a pending todo owned by the caller.",
)
def create_todo(
    payload: TodoCreate,
    user: UserEntity = Depends(get_current_user),
    repo: TodoRepository = Depends(get_todo_repo),
) -> dict:
    created = repo.create(user["id"], payload)
    logger.info("Todo %s created by user %s", created["id"], user["id"])
    return envelope(data=TodoOut.model_validate(created))


# PUBLIC_INTERFACE
@router.get(
    "/stats",
    response_model=Envelope[TodoStatsOut],
    response_model_exclude_unset=True,
    summary="Todo Statistics",
    description="Counts of the caller's todos by status and priority.",
)
def todo_stats(
    user: UserEntity = Depends(get_current_user),
    repo: TodoRepository = Depends(get_todo_repo),
) -> dict:
    return envelope(data=TodoStatsOut(**repo.stats(user["id"])))


# PUBLIC_INTERFACE
@router.get(
    "/{todo_id}",
    response_model=Envelope[TodoOut],
    response_model_exclude_unset=True,
    summary="Get Todo",
    responses={404: {"description": "Todo not found"}},
)
def get_todo(
    todo_id: int,
    user: UserEntity = Depends(get_current_user),
    repo: TodoRepository = Depends(get_todo_repo),
) -> dict:
    """
    Retrieve one of the caller's todos.
    """
    return envelope(data=_found(repo.get(user["id"], todo_id)))


# PUBLIC_INTERFACE
@router.put(
    "/{todo_id}",
    response_model=Envelope[TodoOut],
    response_model_exclude_unset=True,
    summary="Update Todo",
    description="Change only the fields present in the body. `dueDate: null` clears the due date.",
    responses={404: {"description": "Todo not found"}},
)
def update_todo(
    todo_id: int,
    payload: TodoUpdate,
    user: UserEntity = Depends(get_current_user),
    repo: TodoRepository = Depends(get_todo_repo),
) -> dict:
    return envelope(data=_found(repo.update(user["id"], todo_id, payload.changes())))


# PUBLIC_INTERFACE
@router.delete(
    "/{todo_id}",
    response_model=Envelope,
    response_model_exclude_unset=True,
    summary="Delete Todo",
    responses={404: {"description": "Todo not found"}},
)
def delete_todo(
    todo_id: int,
    user: UserEntity = Depends(get_current_user),
    repo: TodoRepository = Depends(get_todo_repo),
) -> dict:
    if not repo.delete(user["id"], todo_id):
        raise NotFoundError(_NOT_FOUND)
    logger.info("Todo %s deleted by user %s", todo_id, user["id"])
    return envelope(message="Todo deleted successfully")


# PUBLIC_INTERFACE
@router.patch(
    "/{todo_id}/complete",
    response_model=Envelope[TodoOut],
    response_model_exclude_unset=True,
    summary="Mark Todo Completed",
    description="Set status to completed. Repeating the call is harmless.",
)
def mark_completed(
    todo_id: int,
    user: UserEntity = Depends(get_current_user),
    repo: TodoRepository = Depends(get_todo_repo),
) -> dict:
    return envelope(data=_found(repo.set_status(user["id"], todo_id, TodoStatus.COMPLETED)))


# PUBLIC_INTERFACE
@router.patch(
    "/{todo_id}/pending",
    response_model=Envelope[TodoOut],
    response_model_exclude_unset=True,
    summary="Mark Todo Pending",
    description="Set status back to pending. Repeating the call is harmless.",
)
def mark_pending(
    todo_id: int,
    user: UserEntity = Depends(get_current_user),
    repo: TodoRepository = Depends(get_todo_repo),
) -> dict:
    return envelope(data=_found(repo.set_status(user["id"], todo_id, TodoStatus.PENDING)))
