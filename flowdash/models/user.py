"""User entity model.

A user owns flows, connectors, executions and table rows; every query in
the services is filtered by `user_id`. Users sign in with their username
or email and carry an optional display profile.
"""

from datetime import datetime, timezone
from uuid import uuid4

from pydantic import EmailStr
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class UserBase(SQLModel):
    """Fields visible to the account owner."""

    username: str = Field(
        max_length=50,
        index=True,
        unique=True,
        description="Unique username for login",
    )
    email: EmailStr | None = Field(
        default=None,
        max_length=255,
        index=True,
        unique=True,
        description="Email address, also accepted at login",
    )
    display_name: str | None = Field(default=None, max_length=100)
    photo_url: str | None = Field(default=None, max_length=2048)
    is_active: bool = Field(
        default=True,
        description="Inactive users cannot sign in or use their tokens",
    )


class User(UserBase, table=True):
    """Account owning flows and connectors.

    Passwords are stored as bcrypt hashes, never plaintext.
    """

    __tablename__ = "user"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    hashed_password: str = Field(max_length=255)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class UserCreate(SQLModel):
    """Registration form."""

    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=8, max_length=128)
    email: EmailStr | None = None
    display_name: str | None = Field(default=None, max_length=100)


class UserUpdate(SQLModel):
    """Profile fields a user may change; omitted fields are left alone."""

    display_name: str | None = Field(default=None, max_length=100)
    photo_url: str | None = Field(default=None, max_length=2048)
    email: EmailStr | None = None


class UserRead(UserBase):
    id: str
    created_at: datetime
    updated_at: datetime


class LoginRequest(SQLModel):
    """`login` is a username or an email address."""

    login: str = Field(min_length=1, max_length=255)
    password: str


class AuthSession(SQLModel):
    """Issued access token together with the signed-in user."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserRead
