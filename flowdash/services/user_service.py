"""User service.

Handles registration, sign-in by username or email, and profile updates.
"""

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowdash.core.security import hash_password, verify_password
from flowdash.models.user import User, UserCreate, UserUpdate, utc_now

logger = structlog.get_logger()


class UserServiceError(Exception):
    """Error in user service operations."""

    pass


class UserExistsError(UserServiceError):
    """Username or email is already registered."""

    pass


class InvalidCredentialsError(UserServiceError):
    """Unknown login or wrong password."""

    pass


class UserInactiveError(UserServiceError):
    """Account has been disabled."""

    pass


class UserService:
    """Service for user accounts.

    Example usage:
        service = UserService(session)
        user = await service.register(UserCreate(username="ada", password="..."))
        user = await service.authenticate("ada", "...")
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def register(self, data: UserCreate) -> User:
        """Create an account.

        Raises:
            UserExistsError: If the username or email is taken
        """
        await self._ensure_available(data.username, data.email)

        user = User(
            username=data.username,
            email=data.email,
            display_name=data.display_name,
            hashed_password=hash_password(data.password),
        )
        self._session.add(user)
        await self._session.commit()
        await self._session.refresh(user)

        logger.info("user_registered", user_id=user.id, username=user.username)
        return user

    async def authenticate(self, login: str, password: str) -> User:
        """Check a username-or-email and password pair.

        Raises:
            InvalidCredentialsError: If the login is unknown or the password is wrong
            UserInactiveError: If the account is disabled
        """
        result = await self._session.execute(
            select(User).where(or_(User.username == login, User.email == login))
        )
        user = result.scalars().first()

        if user is None or not verify_password(password, user.hashed_password):
            logger.warning("login_failed", user_found=user is not None)
            raise InvalidCredentialsError("Invalid username or password")

        if not user.is_active:
            logger.warning("login_user_inactive", user_id=user.id)
            raise UserInactiveError("User account is disabled")

        logger.info("user_logged_in", user_id=user.id)
        return user

    async def get_active(self, user_id: str) -> User:
        """Load the account behind an access token.

        Raises:
            InvalidCredentialsError: If the user no longer exists
            UserInactiveError: If the account is disabled
        """
        user = await self._session.get(User, user_id)
        if user is None:
            raise InvalidCredentialsError("User not found")
        if not user.is_active:
            raise UserInactiveError("User account is disabled")
        return user

    async def update_profile(self, user: User, data: UserUpdate) -> User:
        """Apply the fields present in `data`.

        Raises:
            UserExistsError: If the new email belongs to another account
        """
        changes = data.model_dump(exclude_unset=True)
        if changes.get("email") and changes["email"] != user.email:
            await self._ensure_available(None, changes["email"])

        for name, value in changes.items():
            setattr(user, name, value)
        user.updated_at = utc_now()

        self._session.add(user)
        await self._session.commit()
        await self._session.refresh(user)

        logger.info("user_updated", user_id=user.id, fields=sorted(changes))
        return user

    async def _ensure_available(self, username: str | None, email: str | None) -> None:
        conditions = []
        if username:
            conditions.append(User.username == username)
        if email:
            conditions.append(User.email == email)
        if not conditions:
            return

        result = await self._session.execute(select(User.id).where(or_(*conditions)))
        if result.first() is not None:
            logger.warning("registration_conflict", username=username)
            raise UserExistsError("Username or email already registered")
