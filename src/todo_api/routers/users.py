from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from ..deps import get_app_settings, get_image_storage, get_todo_repo, get_user_repo
from ..errors import AuthError, NotFoundError, ValidationError, conflict_for_field
from ..models import DEFAULT_PROFILE_IMAGE, UserEntity, utcnow
from ..repositories import TodoRepository, UserRepository
from ..schemas import (
    ChangePasswordIn,
    DeleteAccountIn,
    Envelope,
    MemberOut,
    ProfileUpdate,
    UserImageOut,
    UserOut,
    UserStatsOut,
    UserTodoStatsOut,
    check_new_password,
)
from ..security import get_current_user, hash_password, verify_password
from ..settings import Settings
from ..uploads import ImageStorage, read_payload
from ..utils import envelope

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/user",
    tags=["user"],
    dependencies=[Depends(get_current_user)],
)


# PUBLIC_INTERFACE
def update_account(
    user: UserEntity,
    changes: Mapping[str, Any],
    upload: Optional[UploadFile],
    users: UserRepository,
    storage: ImageStorage,
) -> UserEntity:
    """
    Apply profile field changes and/or a new profile image in one write.

    The new image is stored first; if the record cannot be saved afterwards
    the stored file is removed again. The previous non-default image is
    removed (best-effort) only once the record points at the new one.

    Raises:
        ConflictError: username/email held by another user.
        UploadError: rejected image.
        NotFoundError: the account disappeared meanwhile.
    """
    changes = dict(changes)
    conflict = users.find_conflict(changes.get("username"), changes.get("email"), exclude_id=user["id"])
    if conflict:
        raise conflict_for_field(conflict)

    new_ref: Optional[str] = None
    if upload is not None:
        new_ref = storage.save(upload, owner=user["id"])
        changes["profile_image"] = new_ref

    try:
        updated = users.update(user["id"], changes)
        if updated is None:
            raise NotFoundError("User not found")
    except Exception:
        if new_ref is not None:
            storage.remove(new_ref)
        raise

    old_ref = user["profile_image"]
    if new_ref is not None and old_ref not in (DEFAULT_PROFILE_IMAGE, new_ref):
        storage.remove(old_ref)
    return updated


def completion_rate(completed: int, total: int) -> int:
    """Completed share as a whole percent, rounding halves up; 0 with no todos."""
    if total <= 0:
        return 0
    return int(math.floor(completed * 100 / total + 0.5))


# PUBLIC_INTERFACE
@router.get(
    "/profile",
    response_model=Envelope[UserOut],
    response_model_exclude_unset=True,
    summary="Get Profile",
)
def get_profile(user: UserEntity = Depends(get_current_user)) -> dict:
    return envelope(data=UserOut.model_validate(user))


# PUBLIC_INTERFACE
@router.put(
    "/profile",
    response_model=Envelope[UserOut],
    response_model_exclude_unset=True,
    summary="Update Profile",
    description="Change username and/or email. Values held by another user are rejected with 409.",
)
def update_profile(
    payload: ProfileUpdate,
    user: UserEntity = Depends(get_current_user),
    users: UserRepository = Depends(get_user_repo),
    storage: ImageStorage = Depends(get_image_storage),
) -> dict:
    updated = update_account(user, payload.changes(), None, users, storage)
    return envelope(data=UserOut.model_validate(updated), message="Profile updated successfully")


# PUBLIC_INTERFACE
@router.put(
    "/profile-image",
    response_model=Envelope[UserImageOut],
    response_model_exclude_unset=True,
    summary="Update Profile Image",
    description="Multipart upload with one image under `profileImage` (max 5MB).",
)
async def update_profile_image(
    request: Request,
    user: UserEntity = Depends(get_current_user),
    users: UserRepository = Depends(get_user_repo),
    storage: ImageStorage = Depends(get_image_storage),
) -> dict:
    _, upload = await read_payload(request, max_bytes=storage.max_bytes)
    if upload is None:
        raise ValidationError("Please select an image file")
    updated = await run_in_threadpool(update_account, user, {}, upload, users, storage)
    data = UserImageOut(
        **UserOut.model_validate(updated).model_dump(),
        profile_image_url=storage.url_for(updated["profile_image"], str(request.base_url)),
    )
    return envelope(data=data, message="Profile image updated successfully")


# PUBLIC_INTERFACE
@router.put(
    "/change-password",
    response_model=Envelope,
    response_model_exclude_unset=True,
    summary="Change Password",
)
def change_password(
    payload: ChangePasswordIn,
    user: UserEntity = Depends(get_current_user),
    users: UserRepository = Depends(get_user_repo),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    if not (payload.current_password and payload.new_password and payload.confirm_password):
        raise ValidationError("Please provide current password, new password, and confirm password")
    if payload.new_password != payload.confirm_password:
        raise ValidationError("New password and confirm password do not match")
    try:
        check_new_password(payload.new_password)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if not verify_password(payload.current_password, user["password_hash"]):
        raise AuthError("Current password is incorrect", status_code=400)

    users.update(user["id"], {"password_hash": hash_password(payload.new_password, settings.bcrypt_rounds)})
    logger.info("Password changed for user %s", user["id"])
    return envelope(message="Password changed successfully")


# PUBLIC_INTERFACE
@router.get(
    "/stats",
    response_model=Envelope[UserStatsOut],
    response_model_exclude_unset=True,
    summary="User Statistics",
    description="Membership age plus todo counts and a completion rate in whole percent.",
)
def user_stats(
    user: UserEntity = Depends(get_current_user),
    todos: TodoRepository = Depends(get_todo_repo),
) -> dict:
    stats = todos.stats(user["id"])
    member = MemberOut(
        username=user["username"],
        email=user["email"],
        member_since=user["created_at"],
        days_since_registration=max((utcnow() - user["created_at"]).days, 0),
    )
    todo_stats = UserTodoStatsOut(
        **stats,
        completion_rate=completion_rate(stats["completed_todos"], stats["total_todos"]),
    )
    return envelope(data=UserStatsOut(user=member, todo_stats=todo_stats))


# PUBLIC_INTERFACE
@router.delete(
    "/account",
    response_model=Envelope,
    response_model_exclude_unset=True,
    summary="Delete Account",
    description=(
        "Delete the caller's account after password confirmation. The stored "
        "image and all todos are removed first; the account goes last."
    ),
)
def delete_account(
    payload: Optional[DeleteAccountIn] = None,
    user: UserEntity = Depends(get_current_user),
    users: UserRepository = Depends(get_user_repo),
    todos: TodoRepository = Depends(get_todo_repo),
    storage: ImageStorage = Depends(get_image_storage),
) -> dict:
    password = payload.password if payload else None
    if not password:
        raise ValidationError("Please provide your password to confirm account deletion")
    if not verify_password(password, user["password_hash"]):
        raise AuthError("Incorrect password", status_code=400)

    user_id = user["id"]
    storage.remove(user["profile_image"])
    try:
        removed = todos.delete_for_user(user_id)
        logger.info("Deleted %d todos of user %s", removed, user_id)
    except Exception:
        # Best-effort: the account is deleted regardless.
        logger.exception("Failed to delete todos of user %s", user_id)
    users.delete(user_id)
    logger.info("Account %s deleted", user_id)
    return envelope(message="Account deleted successfully")
