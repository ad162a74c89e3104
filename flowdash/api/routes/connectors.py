"""Connector API endpoints.

Handles connector CRUD and the direct connector calls used by the
connector screens: use-connector, test-connector, oauth-refresh and the
OAuth2 authorization code flow (authorize, callback and code exchange).
"""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from flowdash.api.deps import ConnectorServiceDep, CurrentUser
from flowdash.models.connector import (
    ConnectorCreate,
    ConnectorRead,
    ConnectorTestRequest,
    ConnectorUpdate,
    ConnectorUseRequest,
    OAuthExchangeRequest,
    OAuthRefreshRequest,
)
from flowdash.services.connector_service import (
    ConnectorAccessDeniedError,
    ConnectorServiceNotFoundError,
    ConnectorValidationError,
)

logger = structlog.get_logger()

router = APIRouter(tags=["connectors"])


def _service_error(e: Exception) -> HTTPException:
    if isinstance(e, ConnectorAccessDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, ConnectorValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        )
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


_HANDLED = (ConnectorServiceNotFoundError, ConnectorAccessDeniedError, ConnectorValidationError)


@router.get("/connectors", response_model=list[ConnectorRead])
async def list_connectors(
    user: CurrentUser,
    service: ConnectorServiceDep,
) -> list[ConnectorRead]:
    """List user's connectors. Secrets are never returned."""
    return await service.list_all(user_id=user.id)


@router.post("/connectors", response_model=ConnectorRead, status_code=status.HTTP_201_CREATED)
async def create_connector(
    user: CurrentUser,
    service: ConnectorServiceDep,
    data: ConnectorCreate,
) -> ConnectorRead:
    """Create a connector. The auth config is encrypted before storage."""
    try:
        return await service.create(user_id=user.id, data=data)
    except _HANDLED as e:
        raise _service_error(e) from e


@router.get("/connectors/{connector_id}", response_model=ConnectorRead)
async def get_connector(
    connector_id: str,
    user: CurrentUser,
    service: ConnectorServiceDep,
) -> ConnectorRead:
    try:
        return await service.get(connector_id=connector_id, user_id=user.id)
    except _HANDLED as e:
        raise _service_error(e) from e


@router.put("/connectors/{connector_id}", response_model=ConnectorRead)
async def update_connector(
    connector_id: str,
    user: CurrentUser,
    service: ConnectorServiceDep,
    data: ConnectorUpdate,
) -> ConnectorRead:
    try:
        return await service.update(connector_id=connector_id, user_id=user.id, data=data)
    except _HANDLED as e:
        raise _service_error(e) from e


@router.delete("/connectors/{connector_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_connector(
    connector_id: str,
    user: CurrentUser,
    service: ConnectorServiceDep,
) -> None:
    try:
        await service.delete(connector_id=connector_id, user_id=user.id)
    except _HANDLED as e:
        raise _service_error(e) from e


@router.post("/use-connector", response_model=dict[str, Any])
async def use_connector(
    user: CurrentUser,
    service: ConnectorServiceDep,
    data: ConnectorUseRequest,
) -> dict[str, Any]:
    """Call an endpoint through a connector.

    Upstream failures are reported in the body (`success: false`) rather
    than as an HTTP error of this endpoint.
    """
    try:
        return await service.use_connector(user.id, data)
    except _HANDLED as e:
        raise _service_error(e) from e


@router.post("/test-connector", response_model=dict[str, Any])
async def test_connector(
    user: CurrentUser,
    service: ConnectorServiceDep,
    data: ConnectorTestRequest,
) -> dict[str, Any]:
    """Check a stored or unsaved connector against its base URL."""
    try:
        return await service.test_connector(
            user.id,
            connector_id=data.connector_id,
            connector=data.connector,
        )
    except _HANDLED as e:
        raise _service_error(e) from e


@router.post("/oauth-refresh", response_model=dict[str, Any])
async def oauth_refresh(
    user: CurrentUser,
    service: ConnectorServiceDep,
    data: OAuthRefreshRequest,
) -> dict[str, Any]:
    """Force an OAuth2 token refresh and persist the new token."""
    try:
        result = await service.oauth_refresh(user.id, data.connector_id)
    except _HANDLED as e:
        raise _service_error(e) from e

    logger.info(
        "oauth_refresh_requested",
        connector_id=data.connector_id,
        user_id=user.id,
        success=result["success"],
    )
    return result


@router.post("/connectors/{connector_id}/authorize", response_model=dict[str, str])
async def authorize_connector(
    connector_id: str,
    user: CurrentUser,
    service: ConnectorServiceDep,
) -> dict[str, str]:
    """Start the authorization code flow.

    The client opens `authorization_url`; the provider sends the user back
    to the connector's redirect URI with `code` and `state`.
    """
    try:
        return await service.start_authorization(user.id, connector_id)
    except _HANDLED as e:
        raise _service_error(e) from e


@router.get("/oauth/callback", response_model=dict[str, Any])
async def oauth_callback(
    service: ConnectorServiceDep,
    code: str | None = Query(default=None, description="Authorization code from provider"),
    state: str | None = Query(default=None, description="State issued by the authorize call"),
    error: str | None = Query(default=None, description="Error from provider"),
    error_description: str | None = Query(default=None, description="Error description"),
) -> dict[str, Any]:
    """Provider redirect target.

    The state identifies the user and connector, so this endpoint needs no
    bearer token.
    """
    if error:
        logger.warning(
            "oauth_callback_error_from_provider",
            error=error,
            error_description=error_description,
        )
        return {"success": False, "error": error_description or error}

    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="code and state are required",
        )

    try:
        return await service.complete_authorization(state, code)
    except ConnectorValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except _HANDLED as e:
        raise _service_error(e) from e


@router.post("/oauth-exchange", response_model=dict[str, Any])
async def oauth_exchange(
    user: CurrentUser,
    service: ConnectorServiceDep,
    data: OAuthExchangeRequest,
) -> dict[str, Any]:
    """Exchange an authorization code the client received for tokens."""
    try:
        result = await service.exchange_code(user.id, data.connector_id, data.code)
    except _HANDLED as e:
        raise _service_error(e) from e

    logger.info(
        "oauth_exchange_requested",
        connector_id=data.connector_id,
        user_id=user.id,
        success=result["success"],
    )
    return result
