"""Account endpoints: registration, sign-in and the caller's profile."""

import structlog
from fastapi import APIRouter, HTTPException, status

from flowdash.api.deps import CurrentUser, UserServiceDep
from flowdash.core.security import access_token_lifetime, create_access_token
from flowdash.models.user import AuthSession, LoginRequest, User, UserCreate, UserRead, UserUpdate
from flowdash.services.user_service import (
    InvalidCredentialsError,
    UserExistsError,
    UserInactiveError,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/auth", tags=["auth"])


def _session_for(user: User) -> AuthSession:
    return AuthSession(
        access_token=create_access_token(user.id),
        expires_in=int(access_token_lifetime().total_seconds()),
        user=UserRead.model_validate(user),
    )


@router.post("/register", response_model=AuthSession, status_code=status.HTTP_201_CREATED)
async def register(data: UserCreate, users: UserServiceDep) -> AuthSession:
    """Create an account and sign it in.

    Raises:
        HTTPException 409: If the username or email is taken
    """
    try:
        user = await users.register(data)
    except UserExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return _session_for(user)


@router.post("/login", response_model=AuthSession)
async def login(data: LoginRequest, users: UserServiceDep) -> AuthSession:
    """Sign in with a username or email address."""
    try:
        user = await users.authenticate(data.login, data.password)
    except InvalidCredentialsError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    except UserInactiveError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    return _session_for(user)


@router.get("/me", response_model=UserRead)
async def get_me(user: CurrentUser) -> UserRead:
    return UserRead.model_validate(user)


@router.patch("/me", response_model=UserRead)
async def update_me(data: UserUpdate, user: CurrentUser, users: UserServiceDep) -> UserRead:
    """Change the caller's display name, photo or email."""
    try:
        updated = await users.update_profile(user, data)
    except UserExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return UserRead.model_validate(updated)
