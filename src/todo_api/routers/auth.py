from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from starlette.concurrency import run_in_threadpool

from ..deps import get_app_settings, get_image_storage, get_user_repo
from ..errors import AuthError, ValidationError, conflict_for_field
from ..models import DEFAULT_PROFILE_IMAGE, UserEntity
from ..repositories import UserRepository
from ..schemas import AuthOut, Envelope, LoginIn, ProfileUpdate, RegisterIn, UserOut, parse_model
from ..security import create_access_token, get_current_user, hash_password, verify_password
from ..settings import Settings
from ..uploads import ImageStorage, read_payload
from ..utils import envelope
from .users import update_account

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# PUBLIC_INTERFACE
@router.post(
    "/register",
    response_model=Envelope[AuthOut],
    response_model_exclude_unset=True,
    status_code=status.HTTP_201_CREATED,
    summary="Register",
    description=(
        "Create an account from a JSON body or a multipart form. A form may "
        "carry one optional image under `profileImage`."
    ),
    responses={409: {"description": "Username or email already exists"}},
)
async def register(
    request: Request,
    users: UserRepository = Depends(get_user_repo),
    storage: ImageStorage = Depends(get_image_storage),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    fields, upload = await read_payload(request, max_bytes=storage.max_bytes)
    data = parse_model(RegisterIn, fields)

    conflict = await run_in_threadpool(users.find_conflict, data.username, data.email)
    if conflict:
        logger.info("Registration rejected, %s taken", conflict)
        raise conflict_for_field(conflict)

    image = DEFAULT_PROFILE_IMAGE
    if upload is not None:
        # No account id exists yet.
        image = await run_in_threadpool(storage.save, upload, "temp")

    password_hash = await run_in_threadpool(hash_password, data.password, settings.bcrypt_rounds)
    try:
        # The store's uniqueness constraint has the final say.
        user = await run_in_threadpool(users.create, data.username, data.email, password_hash, image)
    except Exception:
        await run_in_threadpool(storage.remove, image)
        raise

    logger.info("User %s registered", user["id"])
    token = create_access_token(user["id"], settings)
    return envelope(
        data=AuthOut(token=token, user=UserOut.model_validate(user)),
        message="User registered successfully",
    )


# PUBLIC_INTERFACE
@router.post(
    "/login",
    response_model=Envelope[AuthOut],
    response_model_exclude_unset=True,
    summary="Login",
    description="Exchange a username or email (`identifier`, `email` or `username`) and password for a token.",
    responses={401: {"description": "Invalid credentials"}},
)
def login(
    payload: LoginIn,
    users: UserRepository = Depends(get_user_repo),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    if not payload.identifier or not payload.password:
        raise ValidationError("Please provide username or email and password")

    user = users.find_by_login(payload.identifier)
    if user is None or not verify_password(payload.password, user["password_hash"]):
        logger.info("Failed login for %r", payload.identifier)
        raise AuthError("Invalid credentials")

    token = create_access_token(user["id"], settings)
    return envelope(data=AuthOut(token=token, user=UserOut.model_validate(user)), message="Login successful")


# PUBLIC_INTERFACE
@router.get(
    "/me",
    response_model=Envelope[UserOut],
    response_model_exclude_unset=True,
    summary="Current User",
)
def me(user: UserEntity = Depends(get_current_user)) -> dict:
    return envelope(data=UserOut.model_validate(user))


# PUBLIC_INTERFACE
@router.put(
    "/profile",
    response_model=Envelope[UserOut],
    response_model_exclude_unset=True,
    summary="Update Profile",
    description="JSON or multipart update of username/email with an optional `profileImage`.",
)
async def update_profile(
    request: Request,
    user: UserEntity = Depends(get_current_user),
    users: UserRepository = Depends(get_user_repo),
    storage: ImageStorage = Depends(get_image_storage),
) -> dict:
    fields, upload = await read_payload(request, max_bytes=storage.max_bytes)
    changes = parse_model(ProfileUpdate, fields).changes()
    updated = await run_in_threadpool(update_account, user, changes, upload, users, storage)
    return envelope(data=UserOut.model_validate(updated), message="Profile updated successfully")
