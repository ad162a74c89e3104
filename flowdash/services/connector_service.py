"""Connector service.

Handles CRUD operations for connectors with encrypted auth, plus the
direct connector calls used by the connector screens (use, test, OAuth2
refresh and the authorization code flow). Auth configs are
Fernet-encrypted at rest.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowdash.config import settings
from flowdash.core.connector_auth import (
    ConnectorAuthResolver,
    OutboundRequest,
    authorization_url,
    utc_now,
)
from flowdash.core.encryption import AuthEncryption, DecryptionError, mask_secret
from flowdash.core.errors import AuthError
from flowdash.core.http import build_url, parse_body, send, truncate
from flowdash.core.ports import ConnectorNotFoundError
from flowdash.models.connector import (
    AuthType,
    Connector,
    ConnectorAuth,
    ConnectorConfig,
    ConnectorCreate,
    ConnectorRead,
    ConnectorUpdate,
    ConnectorUseRequest,
    OAuth2Auth,
    TokenStatus,
)

logger = structlog.get_logger()

_auth_adapter: TypeAdapter[Any] = TypeAdapter(ConnectorAuth)
_auth_resolver: ConnectorAuthResolver | None = None


@dataclass
class PendingAuthorization:
    user_id: str
    connector_id: str
    created_at: datetime


# In-memory state storage, maps state -> pending authorization
_pending_authorizations: dict[str, PendingAuthorization] = {}


def get_auth_resolver() -> ConnectorAuthResolver:
    """Process-wide resolver so token refreshes are serialized across requests."""
    global _auth_resolver
    if _auth_resolver is None:
        _auth_resolver = ConnectorAuthResolver()
    return _auth_resolver


def _expire_pending_authorizations() -> None:
    cutoff = utc_now() - timedelta(seconds=settings.oauth_state_ttl)
    for state in [s for s, p in _pending_authorizations.items() if p.created_at <= cutoff]:
        del _pending_authorizations[state]


class ConnectorServiceError(Exception):
    """Error in connector service operations."""

    pass


class ConnectorServiceNotFoundError(ConnectorServiceError):
    """Connector not found."""

    pass


class ConnectorAccessDeniedError(ConnectorServiceError):
    """User doesn't have access to connector."""

    pass


class ConnectorValidationError(ConnectorServiceError):
    """Connector auth config is invalid."""

    def __init__(self, message: str, errors: list[str]) -> None:
        super().__init__(message)
        self.errors = errors


def parse_auth(data: dict[str, Any]) -> Any:
    """Validate a raw auth dict (snake_case or camelCase keys).

    Raises:
        ConnectorValidationError: If the auth config is invalid
    """
    try:
        return _auth_adapter.validate_python(data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConnectorValidationError("Invalid connector auth", errors=errors) from e


def parse_inline_connector(data: dict[str, Any]) -> ConnectorConfig:
    """Build a runtime connector from an unsaved connector form payload."""
    payload = dict(data)
    if "baseUrl" in payload and "base_url" not in payload:
        payload["base_url"] = payload.pop("baseUrl")
    payload["auth"] = parse_auth(payload.get("auth") or {"type": "none"})
    try:
        return ConnectorConfig.model_validate(payload)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConnectorValidationError("Invalid connector", errors=errors) from e


def token_status(auth: Any) -> TokenStatus | None:
    """Non-secret summary of OAuth2 token state."""
    if not isinstance(auth, OAuth2Auth):
        return None
    return TokenStatus(
        has_access_token=bool(auth.access_token),
        has_refresh_token=bool(auth.refresh_token),
        token_expires_at=auth.token_expires_at,
        last_refreshed=auth.last_refreshed,
        needs_reauth=auth.needs_reauth,
    )


class ConnectorService:
    """Service for managing user connectors.

    Handles:
    - Creating connectors with encrypted auth
    - Loading decrypted runtime configs for the engine
    - Persisting refreshed OAuth2 tokens
    - Direct connector calls (use, test, refresh)
    - User-scoped access control

    Example usage:
        service = ConnectorService(session)
        connector = await service.create(
            user_id="user-123",
            data=ConnectorCreate(
                name="CRM",
                base_url="https://api.example.com",
                auth={"type": "basic", "username": "u", "password": "p"},
            ),
        )
    """

    def __init__(
        self,
        session: AsyncSession,
        auth_resolver: ConnectorAuthResolver | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session = session
        self._encryption = AuthEncryption(settings.encryption_key.get_secret_value())
        self._auth = auth_resolver or get_auth_resolver()
        self._http = http_client

    async def create(self, user_id: str, data: ConnectorCreate) -> ConnectorRead:
        """Create a new connector.

        Raises:
            ConnectorValidationError: If the auth config is invalid
        """
        auth = parse_auth(data.auth)

        connector = Connector(
            user_id=user_id,
            name=data.name,
            base_url=data.base_url,
            auth_type=AuthType(auth.type),
            encrypted_auth=self._encrypt_auth(auth),
        )
        connector.set_headers(data.headers)

        self._session.add(connector)
        await self._session.commit()
        await self._session.refresh(connector)

        logger.info(
            "connector_created",
            connector_id=connector.id,
            user_id=user_id,
            auth_type=auth.type,
        )

        return self._to_read(connector, auth)

    async def get(self, connector_id: str, user_id: str) -> ConnectorRead:
        """Get a connector (without secrets).

        Raises:
            ConnectorServiceNotFoundError: If connector doesn't exist
            ConnectorAccessDeniedError: If user doesn't own connector
        """
        connector = await self._get_and_verify(connector_id, user_id)
        return self._to_read(connector, self._decrypt_auth(connector))

    async def list_all(
        self,
        user_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ConnectorRead]:
        """List user's connectors (without secrets)."""
        query = (
            select(Connector)
            .where(Connector.user_id == user_id)
            .order_by(Connector.name)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(query)
        return [self._to_read(c, self._decrypt_auth(c)) for c in result.scalars().all()]

    async def update(
        self,
        connector_id: str,
        user_id: str,
        data: ConnectorUpdate,
    ) -> ConnectorRead:
        """Update a connector.

        Raises:
            ConnectorServiceNotFoundError: If connector doesn't exist
            ConnectorAccessDeniedError: If user doesn't own connector
            ConnectorValidationError: If the new auth config is invalid
        """
        connector = await self._get_and_verify(connector_id, user_id)

        if data.name is not None:
            connector.name = data.name

        if data.base_url is not None:
            connector.base_url = data.base_url

        if data.headers is not None:
            connector.set_headers(data.headers)

        if data.auth is not None:
            auth = parse_auth(data.auth)
            connector.auth_type = AuthType(auth.type)
            connector.encrypted_auth = self._encrypt_auth(auth)

        await self._session.commit()
        await self._session.refresh(connector)

        logger.info("connector_updated", connector_id=connector_id, user_id=user_id)

        return self._to_read(connector, self._decrypt_auth(connector))

    async def delete(self, connector_id: str, user_id: str) -> None:
        """Delete a connector.

        Raises:
            ConnectorServiceNotFoundError: If connector doesn't exist
            ConnectorAccessDeniedError: If user doesn't own connector
        """
        connector = await self._get_and_verify(connector_id, user_id)

        await self._session.delete(connector)
        await self._session.commit()

        logger.info("connector_deleted", connector_id=connector_id, user_id=user_id)

    async def get_config(self, connector_id: str, user_id: str) -> ConnectorConfig:
        """Get the decrypted runtime config of a connector.

        SECURITY: the result carries secrets. Never log it.
        """
        connector = await self._get_and_verify(connector_id, user_id)
        return self._to_config(connector)

    async def save_config(self, config: ConnectorConfig, user_id: str) -> None:
        """Persist the auth state (refreshed tokens) of a stored connector."""
        if config.id is None:
            return
        connector = await self._get_and_verify(config.id, user_id)
        connector.encrypted_auth = self._encrypt_auth(config.auth)
        self._session.add(connector)
        await self._session.commit()

        logger.debug("connector_auth_saved", connector_id=config.id, user_id=user_id)

    async def use_connector(self, user_id: str, request: ConnectorUseRequest) -> dict[str, Any]:
        """Call an endpoint through a connector.

        Refreshed tokens of stored connectors are saved; inline connectors
        get the updated auth back in `updated_auth` for the caller to keep.

        Raises:
            ConnectorValidationError: If neither connector_id nor connector is given
        """
        config = await self._resolve_target(user_id, request.connector_id, request.connector)
        outbound = OutboundRequest(
            method=request.method.upper(),
            url=build_url(config.base_url, request.endpoint),
            headers={**config.headers, **request.headers},
            body=request.data,
        )

        try:
            authorized = await self._auth.authorize(config, outbound)
        except AuthError as e:
            if e.connector is not None:
                await self.save_config(e.connector, user_id)
            logger.warning("connector_auth_failed", connector_id=config.id, error=e.message)
            return {
                "success": False,
                "status": e.http_status or 401,
                "status_text": "Authentication failed",
                "data": {"error": e.message, "details": e.details},
                "headers": {},
                "token_refreshed": False,
            }

        if authorized.token_refreshed:
            await self.save_config(authorized.connector, user_id)

        try:
            response = await self._send(authorized.request)
        except httpx.HTTPError as e:
            logger.warning(
                "connector_request_failed",
                connector_id=config.id,
                error_type=type(e).__name__,
            )
            return {
                "success": False,
                "status": 0,
                "status_text": type(e).__name__,
                "data": {"error": str(e) or type(e).__name__},
                "headers": {},
                "token_refreshed": authorized.token_refreshed,
            }

        logger.info(
            "connector_used",
            connector_id=config.id,
            method=outbound.method,
            status_code=response.status_code,
        )

        result: dict[str, Any] = {
            "success": response.is_success,
            "status": response.status_code,
            "status_text": response.reason_phrase,
            "data": parse_body(response),
            "headers": dict(response.headers),
            "token_refreshed": authorized.token_refreshed,
        }
        if authorized.token_refreshed and config.id is None:
            result["updated_auth"] = authorized.connector.auth.model_dump(
                mode="json", by_alias=True
            )
        return result

    async def test_connector(
        self,
        user_id: str,
        connector_id: str | None = None,
        connector: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Check that a connector authenticates and its base URL answers."""
        config = await self._resolve_target(user_id, connector_id, connector)
        outbound = OutboundRequest(method="GET", url=config.base_url, headers=dict(config.headers))

        try:
            authorized = await self._auth.authorize(config, outbound)
        except AuthError as e:
            if e.connector is not None:
                await self.save_config(e.connector, user_id)
            return {
                "success": False,
                "message": f"Authentication failed: {e.message}",
                "details": {"error": e.message, "http_status": e.http_status},
            }

        if authorized.token_refreshed:
            await self.save_config(authorized.connector, user_id)

        try:
            response = await self._send(authorized.request)
        except httpx.HTTPError as e:
            return {
                "success": False,
                "message": f"Connection failed: {type(e).__name__}",
                "details": {"url": config.base_url},
            }

        details = {
            "status": response.status_code,
            "url": config.base_url,
            "token_refreshed": authorized.token_refreshed,
        }
        if response.is_error:
            details["response"] = truncate(parse_body(response), 1000)
            return {
                "success": False,
                "message": f"Connection failed with status {response.status_code}",
                "details": details,
            }

        logger.info("connector_tested", connector_id=config.id, status_code=response.status_code)
        return {"success": True, "message": "Connection successful", "details": details}

    async def oauth_refresh(self, user_id: str, connector_id: str) -> dict[str, Any]:
        """Force a token refresh for a stored OAuth2 connector.

        Raises:
            ConnectorServiceNotFoundError: If connector doesn't exist
            ConnectorAccessDeniedError: If user doesn't own connector
        """
        config = await self.get_config(connector_id, user_id)
        if not isinstance(config.auth, OAuth2Auth):
            return {"success": False, "error": "Connector does not use OAuth2"}

        try:
            refreshed, _ = await self._auth.refresh(config, force=True)
        except AuthError as e:
            if e.connector is not None:
                await self.save_config(e.connector, user_id)
            return {
                "success": False,
                "error": e.message,
                "needs_reauth": config.auth.grant_type == "authorization_code",
            }

        await self.save_config(refreshed, user_id)
        auth = refreshed.auth
        return {
            "success": True,
            "message": "Token refreshed",
            "access_token": mask_secret(auth.access_token),
            "token_expires_at": auth.token_expires_at,
            "last_refreshed": auth.last_refreshed,
            "has_refresh_token": bool(auth.refresh_token),
            "needs_reauth": auth.needs_reauth,
        }

    async def start_authorization(self, user_id: str, connector_id: str) -> dict[str, str]:
        """Begin the authorization code flow for a stored connector.

        Returns the provider URL the user should visit and the state that
        the provider echoes back to the callback.

        Raises:
            ConnectorServiceNotFoundError: If connector doesn't exist
            ConnectorAccessDeniedError: If user doesn't own connector
            ConnectorValidationError: If the connector cannot start the flow
        """
        config = await self.get_config(connector_id, user_id)
        auth = config.auth
        if not isinstance(auth, OAuth2Auth) or auth.grant_type != "authorization_code":
            raise ConnectorValidationError(
                "Connector does not use the OAuth2 authorization code flow",
                errors=["auth.oauth2Type: must be authorization_code"],
            )

        _expire_pending_authorizations()
        state = secrets.token_urlsafe(32)
        try:
            url = authorization_url(auth, state)
        except AuthError as e:
            raise ConnectorValidationError(
                e.message, errors=["auth: authorizationUrl and redirectUri are required"]
            ) from e

        _pending_authorizations[state] = PendingAuthorization(
            user_id=user_id,
            connector_id=connector_id,
            created_at=utc_now(),
        )
        logger.info(
            "oauth_authorization_initiated",
            connector_id=connector_id,
            user_id=user_id,
        )
        return {"authorization_url": url, "state": state}

    async def complete_authorization(self, state: str, code: str) -> dict[str, Any]:
        """Finish a flow started by `start_authorization`.

        Raises:
            ConnectorValidationError: If the state is unknown or expired
        """
        _expire_pending_authorizations()
        pending = _pending_authorizations.pop(state, None)
        if pending is None:
            logger.warning("oauth_callback_invalid_state")
            raise ConnectorValidationError(
                "Unknown or expired authorization state", errors=["state: invalid"]
            )
        return await self.exchange_code(pending.user_id, pending.connector_id, code)

    async def exchange_code(self, user_id: str, connector_id: str, code: str) -> dict[str, Any]:
        """Exchange an authorization code and store the resulting tokens.

        Raises:
            ConnectorServiceNotFoundError: If connector doesn't exist
            ConnectorAccessDeniedError: If user doesn't own connector
        """
        config = await self.get_config(connector_id, user_id)

        try:
            connected = await self._auth.exchange_code(config, code)
        except AuthError as e:
            logger.error(
                "oauth_code_exchange_failed",
                connector_id=connector_id,
                user_id=user_id,
                error=e.message,
            )
            return {"success": False, "error": e.message}

        await self.save_config(connected, user_id)
        auth = connected.auth
        return {
            "success": True,
            "message": "Connector authorized",
            "access_token": mask_secret(auth.access_token),
            "token_expires_at": auth.token_expires_at,
            "has_refresh_token": bool(auth.refresh_token),
        }

    async def list_oauth_configs(self) -> list[tuple[str, ConnectorConfig]]:
        """Decrypted runtime configs of every stored OAuth2 connector.

        SECURITY: the result carries secrets. Never log it.
        """
        result = await self._session.execute(
            select(Connector).where(Connector.auth_type == AuthType.OAUTH2)
        )
        return [(c.user_id, self._to_config(c)) for c in result.scalars().all()]

    async def _resolve_target(
        self,
        user_id: str,
        connector_id: str | None,
        connector: dict[str, Any] | None,
    ) -> ConnectorConfig:
        if connector_id:
            return await self.get_config(connector_id, user_id)
        if connector:
            return parse_inline_connector(connector)
        raise ConnectorValidationError(
            "Either connector_id or connector is required",
            errors=["connector_id: missing"],
        )

    async def _send(self, request: OutboundRequest) -> httpx.Response:
        if self._http is not None:
            return await send(self._http, request, settings.http_timeout)
        async with httpx.AsyncClient() as client:
            return await send(client, request, settings.http_timeout)

    async def _get_and_verify(self, connector_id: str, user_id: str) -> Connector:
        """Get connector and verify ownership.

        Raises:
            ConnectorServiceNotFoundError: If not found
            ConnectorAccessDeniedError: If wrong owner
        """
        result = await self._session.execute(
            select(Connector).where(Connector.id == connector_id)
        )
        connector = result.scalar_one_or_none()

        if connector is None:
            raise ConnectorServiceNotFoundError(f"Connector '{connector_id}' not found")

        if connector.user_id != user_id:
            logger.warning(
                "connector_access_denied",
                connector_id=connector_id,
                requested_by=user_id,
                owner=connector.user_id,
            )
            raise ConnectorAccessDeniedError("Access denied to connector")

        return connector

    def _encrypt_auth(self, auth: Any) -> str:
        return self._encryption.encrypt(auth.model_dump(mode="json"))

    def _decrypt_auth(self, connector: Connector) -> Any:
        try:
            data = self._encryption.decrypt(connector.encrypted_auth)
        except DecryptionError as e:
            logger.error("connector_decryption_failed", connector_id=connector.id)
            raise ConnectorServiceError("Failed to decrypt connector auth") from e
        return parse_auth(data)

    def _to_config(self, connector: Connector) -> ConnectorConfig:
        return ConnectorConfig(
            id=connector.id,
            name=connector.name,
            base_url=connector.base_url,
            auth=self._decrypt_auth(connector),
            headers=connector.get_headers(),
        )

    def _to_read(self, connector: Connector, auth: Any) -> ConnectorRead:
        return ConnectorRead(
            id=connector.id,
            user_id=connector.user_id,
            name=connector.name,
            base_url=connector.base_url,
            auth_type=connector.auth_type,
            headers=connector.get_headers(),
            token_status=token_status(auth),
            created_at=connector.created_at,
            updated_at=connector.updated_at,
        )


class SqlConnectorResolver:
    """ConnectorResolver over the connector table, scoped to one user."""

    def __init__(self, service: ConnectorService, user_id: str) -> None:
        self._service = service
        self._user_id = user_id

    async def get_connector(self, connector_id: str) -> ConnectorConfig:
        try:
            return await self._service.get_config(connector_id, self._user_id)
        except (ConnectorServiceNotFoundError, ConnectorAccessDeniedError):
            raise ConnectorNotFoundError(connector_id) from None

    async def save_connector(self, connector: ConnectorConfig) -> None:
        await self._service.save_config(connector, self._user_id)
