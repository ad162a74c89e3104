"""Connector auth resolution.

Augments outbound requests with a connector's credentials:

- none: request is passed through unchanged
- basic: `Authorization: Basic base64(username:password)`
- oauth2: a Bearer token in a header or an `access_token` body field,
  fetched or refreshed when the cached token is missing or expires within
  the refresh buffer

Refreshed token state is returned to the caller (`token_refreshed=True`)
so it can be persisted; this module never writes to storage.
"""

import asyncio
import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
import structlog

from flowdash.config import settings
from flowdash.core.errors import AuthError
from flowdash.models.connector import BasicAuth, ConnectorConfig, OAuth2Auth

logger = structlog.get_logger()

BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def basic_auth_header(username: str, password: str) -> str:
    """Build a Basic authorization header value."""
    raw = f"{username}:{password}".encode("utf-8")
    return f"Basic {base64.b64encode(raw).decode('ascii')}"


def credential_fingerprint(auth: OAuth2Auth) -> str:
    """Hash of every field that decides which token an OAuth2 config is issued."""
    material = "\x1f".join(
        value or ""
        for value in (
            auth.token_url,
            auth.client_id,
            auth.client_secret,
            auth.scope,
            auth.grant_type,
            auth.refresh_token,
        )
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def authorization_url(auth: OAuth2Auth, state: str) -> str:
    """Build the provider URL a user visits to grant access.

    Raises:
        AuthError: If the connector has no authorization or redirect URL
    """
    if not auth.authorization_url or not auth.redirect_uri:
        raise AuthError(
            "Connector has no authorization_url or redirect_uri",
            details={"grant_type": auth.grant_type},
        )
    params = {
        "response_type": "code",
        "client_id": auth.client_id,
        "redirect_uri": auth.redirect_uri,
        "state": state,
    }
    if auth.scope:
        params["scope"] = auth.scope
    separator = "&" if "?" in auth.authorization_url else "?"
    return f"{auth.authorization_url}{separator}{urlencode(params)}"


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


@dataclass
class OutboundRequest:
    """HTTP request about to be sent on behalf of a connector."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None

    def copy(self) -> "OutboundRequest":
        body = dict(self.body) if isinstance(self.body, dict) else self.body
        return OutboundRequest(
            method=self.method,
            url=self.url,
            headers=dict(self.headers),
            params=dict(self.params),
            body=body,
        )

    def set_header(self, name: str, value: str) -> None:
        """Set a header, replacing any existing one regardless of case."""
        for existing in [h for h in self.headers if h.lower() == name.lower()]:
            del self.headers[existing]
        self.headers[name] = value


@dataclass
class AuthorizedRequest:
    request: OutboundRequest
    connector: ConnectorConfig
    token_refreshed: bool = False


@dataclass(frozen=True)
class _CachedToken:
    fingerprint: str
    auth: OAuth2Auth


class ConnectorAuthResolver:
    """Resolves connector credentials and keeps OAuth2 tokens fresh.

    One resolver is shared by all executions of a process. Concurrent
    refreshes of the same connector are serialized with a per-connector
    lock; a caller that waited on the lock reuses the token fetched by the
    previous holder instead of refreshing again. A cached token is only
    handed to callers whose credentials hash to the same fingerprint.

    Example usage:
        resolver = ConnectorAuthResolver(http_client)
        authorized = await resolver.authorize(connector, request)
        if authorized.token_refreshed:
            await store.save_connector(authorized.connector)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        refresh_buffer: int | None = None,
        default_expires_in: int | None = None,
        timeout: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = http_client
        self.refresh_buffer = timedelta(
            seconds=settings.oauth_refresh_buffer if refresh_buffer is None else refresh_buffer
        )
        self.default_expires_in = default_expires_in or settings.oauth_default_expires_in
        self.timeout = timeout or settings.http_timeout
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._fresh: dict[str, _CachedToken] = {}

    def needs_refresh(self, auth: OAuth2Auth) -> bool:
        """True when there is no usable token or it expires within the buffer."""
        if not auth.access_token or auth.token_expires_at is None:
            return True
        return _as_utc(auth.token_expires_at) - self._clock() <= self.refresh_buffer

    async def authorize(
        self,
        connector: ConnectorConfig,
        request: OutboundRequest,
    ) -> AuthorizedRequest:
        """Return a copy of the request carrying the connector's credentials.

        With token location `body`, methods that carry no payload get the
        token as an `access_token` query parameter instead.

        Raises:
            AuthError: If an OAuth2 token cannot be obtained or placed
        """
        connector, refreshed = await self.maybe_refresh(connector)
        augmented = request.copy()
        auth = connector.auth

        if isinstance(auth, BasicAuth):
            augmented.set_header("Authorization", basic_auth_header(auth.username, auth.password))
        elif isinstance(auth, OAuth2Auth):
            token = auth.access_token or ""
            if auth.token_location == "body":
                if augmented.method.upper() in BODYLESS_METHODS:
                    augmented.params["access_token"] = token
                elif augmented.body is None:
                    augmented.body = {"access_token": token}
                elif isinstance(augmented.body, dict):
                    augmented.body["access_token"] = token
                else:
                    raise AuthError(
                        "OAuth2 token location 'body' requires a JSON object payload",
                        details={"connector": connector.name},
                    )
            else:
                name = "Authorization" if auth.case_sensitive_headers else "authorization"
                augmented.set_header(name, f"Bearer {token}")

        return AuthorizedRequest(request=augmented, connector=connector, token_refreshed=refreshed)

    async def maybe_refresh(self, connector: ConnectorConfig) -> tuple[ConnectorConfig, bool]:
        """Refresh an OAuth2 token if it is missing or about to expire.

        Returns:
            The (possibly updated) connector and whether its token changed
        """
        auth = connector.auth
        if not isinstance(auth, OAuth2Auth) or not self.needs_refresh(auth):
            return connector, False
        return await self.refresh(connector)

    async def refresh(
        self,
        connector: ConnectorConfig,
        force: bool = False,
    ) -> tuple[ConnectorConfig, bool]:
        """Fetch a new token for an OAuth2 connector.

        Without `force`, a token fetched by a concurrent caller while this
        one waited for the lock is reused, provided both callers hold the
        same credentials.

        Raises:
            AuthError: If the connector is not OAuth2 or the token endpoint fails
        """
        auth = connector.auth
        if not isinstance(auth, OAuth2Auth):
            raise AuthError(
                f"Connector '{connector.name}' does not use OAuth2",
                details={"auth_type": auth.type},
            )

        fingerprint = credential_fingerprint(auth)
        key = self._cache_key(connector, fingerprint)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._fresh.get(key)
            if (
                not force
                and cached is not None
                and cached.fingerprint == fingerprint
                and not self.needs_refresh(cached.auth)
            ):
                logger.debug("oauth_token_reused", connector_id=connector.id)
                return self._with_tokens(connector, cached.auth), True

            try:
                refreshed_auth = await self._fetch_token(auth)
            except AuthError as e:
                self._fresh.pop(key, None)
                if auth.grant_type == "authorization_code":
                    e.connector = self._with_tokens(
                        connector, auth.model_copy(update={"needs_reauth": True})
                    )
                raise

            self._fresh[key] = _CachedToken(fingerprint, refreshed_auth)
            self._prune(keep=key)
            logger.info(
                "oauth_token_refreshed",
                connector_id=connector.id,
                grant_type=auth.grant_type,
                expires_at=refreshed_auth.token_expires_at.isoformat()
                if refreshed_auth.token_expires_at
                else None,
            )
            return self._with_tokens(connector, refreshed_auth), True

    async def exchange_code(self, connector: ConnectorConfig, code: str) -> ConnectorConfig:
        """Trade an authorization code for the connector's first tokens.

        Raises:
            AuthError: If the connector is not an authorization_code
                connector or the token endpoint rejects the code
        """
        auth = connector.auth
        if not isinstance(auth, OAuth2Auth) or auth.grant_type != "authorization_code":
            raise AuthError(
                f"Connector '{connector.name}' does not use the OAuth2 authorization code flow",
                details={"auth_type": connector.auth.type},
            )

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": auth.redirect_uri or "",
            "client_id": auth.client_id,
        }
        headers = self._token_headers(auth)
        tokens = await self._request_token(auth, data, headers)

        # Tokens cached for the previous grant no longer apply
        self._fresh.pop(self._cache_key(connector, credential_fingerprint(auth)), None)
        logger.info("oauth_code_exchanged", connector_id=connector.id)
        return self._with_tokens(connector, tokens)

    @staticmethod
    def _cache_key(connector: ConnectorConfig, fingerprint: str) -> str:
        return connector.id or f"inline:{fingerprint}"

    def _prune(self, keep: str) -> None:
        """Drop cached tokens that have expired and locks nobody holds."""
        now = self._clock()
        for key in [
            k
            for k, cached in self._fresh.items()
            if k != keep
            and (
                cached.auth.token_expires_at is None
                or _as_utc(cached.auth.token_expires_at) <= now
            )
        ]:
            del self._fresh[key]
        for key in [
            k
            for k, lock in self._locks.items()
            if k != keep and k not in self._fresh and not lock.locked()
        ]:
            del self._locks[key]

    @staticmethod
    def _with_tokens(connector: ConnectorConfig, tokens: OAuth2Auth) -> ConnectorConfig:
        auth = connector.auth.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "token_expires_at": tokens.token_expires_at,
                "last_refreshed": tokens.last_refreshed,
                "needs_reauth": tokens.needs_reauth,
            }
        )
        return connector.model_copy(update={"auth": auth})

    @staticmethod
    def _token_headers(auth: OAuth2Auth) -> dict[str, str]:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        if auth.client_secret:
            headers["Authorization"] = basic_auth_header(auth.client_id, auth.client_secret)
        return headers

    async def _fetch_token(self, auth: OAuth2Auth) -> OAuth2Auth:
        if auth.grant_type == "client_credentials":
            data = {
                "grant_type": "client_credentials",
                "client_id": auth.client_id,
                "client_secret": auth.client_secret,
            }
            if auth.scope:
                data["scope"] = auth.scope
            headers = {
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            }
        else:
            if not auth.refresh_token:
                raise AuthError(
                    "No refresh token available; the connector must be re-authorized",
                    details={"grant_type": auth.grant_type},
                )
            data = {
                "grant_type": "refresh_token",
                "refresh_token": auth.refresh_token,
                "client_id": auth.client_id,
            }
            headers = self._token_headers(auth)
        return await self._request_token(auth, data, headers)

    async def _request_token(
        self,
        auth: OAuth2Auth,
        data: dict[str, Any],
        headers: dict[str, str],
    ) -> OAuth2Auth:
        try:
            if self._client is not None:
                response = await self._client.post(
                    auth.token_url, data=data, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(auth.token_url, data=data, headers=headers)
        except httpx.HTTPError as e:
            logger.error("oauth_token_request_failed", error_type=type(e).__name__)
            raise AuthError(
                f"Token request failed: {type(e).__name__}",
                details={"token_url": auth.token_url},
            ) from e

        if response.is_error:
            logger.warning("oauth_token_rejected", status_code=response.status_code)
            raise AuthError(
                f"Token endpoint returned {response.status_code}",
                details={"token_url": auth.token_url, "response": response.text[:2000]},
                http_status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise AuthError(
                "Token endpoint returned a non-JSON response",
                details={"token_url": auth.token_url},
            ) from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthError(
                "No access token in token response",
                details={"token_url": auth.token_url},
            )

        now = self._clock()
        try:
            expires_in = int(payload.get("expires_in") or self.default_expires_in)
        except (TypeError, ValueError):
            expires_in = self.default_expires_in

        return auth.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": payload.get("refresh_token") or auth.refresh_token,
                "token_expires_at": now + timedelta(seconds=expires_in),
                "last_refreshed": now,
                "needs_reauth": False,
            }
        )
