"""API dependencies for FastAPI dependency injection.

Provides the database session, the signed-in user, and one service
instance per request.
"""

from typing import Annotated, AsyncGenerator

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from flowdash.config import settings
from flowdash.core.security import InvalidTokenError, decode_access_token
from flowdash.models.user import User
from flowdash.services.connector_service import ConnectorService
from flowdash.services.execution_service import ExecutionService
from flowdash.services.flow_service import FlowService
from flowdash.services.user_service import (
    InvalidCredentialsError,
    UserInactiveError,
    UserService,
)

logger = structlog.get_logger()

# Pool settings do not apply to SQLite, which the tests run on
_engine_kwargs: dict = {}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs = {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
    }

_engine = create_async_engine(settings.database_url, echo=settings.debug, **_engine_kwargs)

_async_session_maker = sessionmaker(
    _engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that is closed when the request ends."""
    async with _async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


DBSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_user_service(session: DBSession) -> UserService:
    return UserService(session)


UserServiceDep = Annotated[UserService, Depends(get_user_service)]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    users: UserServiceDep,
) -> User:
    """Resolve the bearer token to an active user.

    Raises:
        HTTPException 401: If the token is missing, invalid or expired
        HTTPException 403: If the account is disabled
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    try:
        claims = decode_access_token(credentials.credentials)
    except InvalidTokenError as e:
        logger.debug("access_token_rejected", error=str(e))
        raise _unauthorized("Invalid authentication token") from e

    try:
        return await users.get_active(claims.sub)
    except InvalidCredentialsError as e:
        raise _unauthorized("User not found") from e
    except UserInactiveError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e


CurrentUser = Annotated[User, Depends(get_current_user)]


def get_connector_service(session: DBSession) -> ConnectorService:
    return ConnectorService(session)


def get_flow_service(session: DBSession) -> FlowService:
    return FlowService(session)


def get_execution_service(
    session: DBSession,
    flow_service: Annotated[FlowService, Depends(get_flow_service)],
) -> ExecutionService:
    return ExecutionService(session, flow_service)


ConnectorServiceDep = Annotated[ConnectorService, Depends(get_connector_service)]
FlowServiceDep = Annotated[FlowService, Depends(get_flow_service)]
ExecutionServiceDep = Annotated[ExecutionService, Depends(get_execution_service)]
