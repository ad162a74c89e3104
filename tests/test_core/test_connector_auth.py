"""Tests for connector auth resolution and OAuth2 token refresh."""

import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit
from uuid import uuid4

import httpx
import pytest

from flowdash.core.connector_auth import (
    ConnectorAuthResolver,
    OutboundRequest,
    authorization_url,
    basic_auth_header,
    credential_fingerprint,
)
from flowdash.core.errors import AuthError
from flowdash.core.http import send
from flowdash.models.connector import BasicAuth, ConnectorConfig, NoAuth, OAuth2Auth

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
TOKEN_URL = "https://auth.example.com/oauth/token"


class TokenServer:
    """MockTransport handler that counts token requests."""

    def __init__(self, status_code: int = 200, payload: dict | None = None) -> None:
        self.status_code = status_code
        self.payload = payload or {"access_token": "new-token", "expires_in": 3600}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    def form(self, index: int = -1) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}


def make_resolver(server: TokenServer, **kwargs) -> ConnectorAuthResolver:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return ConnectorAuthResolver(client, clock=lambda: NOW, **kwargs)


def oauth_connector(expires_in: timedelta | None, **auth_fields) -> ConnectorConfig:
    auth = {
        "token_url": TOKEN_URL,
        "client_id": "cid",
        "client_secret": "cs",
        "access_token": "old-token" if expires_in is not None else None,
        "token_expires_at": NOW + expires_in if expires_in is not None else None,
        **auth_fields,
    }
    return ConnectorConfig(
        id=str(uuid4()),
        name="CRM",
        base_url="https://crm.example.com",
        auth=OAuth2Auth(**auth),
    )


def request() -> OutboundRequest:
    return OutboundRequest(method="GET", url="https://crm.example.com/contacts")


class TestStaticAuth:
    @pytest.mark.asyncio
    async def test_no_auth_passes_request_through(self):
        resolver = make_resolver(TokenServer())
        connector = ConnectorConfig(base_url="https://x.example.com", auth=NoAuth())

        authorized = await resolver.authorize(connector, request())

        assert authorized.request.headers == {}
        assert authorized.token_refreshed is False

    @pytest.mark.asyncio
    async def test_basic_auth_header(self):
        resolver = make_resolver(TokenServer())
        connector = ConnectorConfig(
            base_url="https://x.example.com",
            auth=BasicAuth(username="user", password="p@ss"),
        )
        original = request()
        original.headers["authorization"] = "stale"

        authorized = await resolver.authorize(connector, original)

        assert authorized.request.headers == {"Authorization": basic_auth_header("user", "p@ss")}
        # The caller's request is not mutated
        assert original.headers == {"authorization": "stale"}

    def test_basic_auth_header_encoding(self):
        assert basic_auth_header("aladdin", "opensesame") == "Basic YWxhZGRpbjpvcGVuc2VzYW1l"


class TestTokenPlacement:
    @pytest.mark.asyncio
    async def test_bearer_header(self):
        resolver = make_resolver(TokenServer())

        authorized = await resolver.authorize(oauth_connector(timedelta(hours=1)), request())

        assert authorized.request.headers["Authorization"] == "Bearer old-token"

    @pytest.mark.asyncio
    async def test_lower_case_header(self):
        resolver = make_resolver(TokenServer())
        connector = oauth_connector(timedelta(hours=1), case_sensitive_headers=False)

        authorized = await resolver.authorize(connector, request())

        assert authorized.request.headers == {"authorization": "Bearer old-token"}

    @pytest.mark.asyncio
    async def test_body_placement_merges_token(self):
        resolver = make_resolver(TokenServer())
        connector = oauth_connector(timedelta(hours=1), token_location="body")
        outbound = OutboundRequest(method="POST", url="https://crm.example.com", body={"q": 1})

        authorized = await resolver.authorize(connector, outbound)

        assert authorized.request.body == {"q": 1, "access_token": "old-token"}
        assert "Authorization" not in authorized.request.headers
        assert outbound.body == {"q": 1}

    @pytest.mark.asyncio
    async def test_body_placement_rejects_text_body(self):
        resolver = make_resolver(TokenServer())
        connector = oauth_connector(timedelta(hours=1), token_location="body")
        outbound = OutboundRequest(method="POST", url="https://crm.example.com", body="raw")

        with pytest.raises(AuthError, match="JSON object payload"):
            await resolver.authorize(connector, outbound)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    async def test_body_placement_on_bodyless_method_uses_query(self, method: str):
        resolver = make_resolver(TokenServer())
        connector = oauth_connector(timedelta(hours=1), token_location="body")
        outbound = OutboundRequest(method=method, url="https://crm.example.com", params={"page": 2})

        authorized = await resolver.authorize(connector, outbound)

        assert authorized.request.params == {"page": 2, "access_token": "old-token"}
        assert authorized.request.body is None
        assert outbound.params == {"page": 2}

    @pytest.mark.asyncio
    async def test_body_placement_token_reaches_get_request(self):
        sent: list[httpx.Request] = []

        def api(request: httpx.Request) -> httpx.Response:
            sent.append(request)
            return httpx.Response(200, json={})

        resolver = make_resolver(TokenServer())
        connector = oauth_connector(timedelta(hours=1), token_location="body")

        authorized = await resolver.authorize(connector, request())
        async with httpx.AsyncClient(transport=httpx.MockTransport(api)) as client:
            await send(client, authorized.request, timeout=5)

        assert sent[0].url.params["access_token"] == "old-token"
        assert sent[0].content == b""


class TestRefreshBuffer:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("remaining", "expected_refreshes"),
        [
            (None, 1),
            (timedelta(seconds=-10), 1),
            (timedelta(seconds=299), 1),
            (timedelta(seconds=300), 1),
            (timedelta(seconds=301), 0),
            (timedelta(hours=2), 0),
        ],
    )
    async def test_refresh_only_near_expiry(self, remaining, expected_refreshes: int):
        server = TokenServer()
        resolver = make_resolver(server)

        authorized = await resolver.authorize(oauth_connector(remaining), request())

        assert len(server.requests) == expected_refreshes
        assert authorized.token_refreshed is bool(expected_refreshes)

    @pytest.mark.asyncio
    async def test_custom_buffer(self):
        server = TokenServer()
        resolver = make_resolver(server, refresh_buffer=60)

        await resolver.authorize(oauth_connector(timedelta(seconds=120)), request())

        assert server.requests == []

    @pytest.mark.asyncio
    async def test_refreshed_token_state(self):
        server = TokenServer(payload={"access_token": "fresh", "expires_in": 600})
        resolver = make_resolver(server)

        authorized = await resolver.authorize(oauth_connector(None), request())

        auth = authorized.connector.auth
        assert auth.access_token == "fresh"
        assert auth.token_expires_at == NOW + timedelta(seconds=600)
        assert auth.last_refreshed == NOW
        assert authorized.request.headers["Authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_missing_expires_in_uses_default(self):
        server = TokenServer(payload={"access_token": "fresh"})
        resolver = make_resolver(server, default_expires_in=1800)

        authorized = await resolver.authorize(oauth_connector(None), request())

        assert authorized.connector.auth.token_expires_at == NOW + timedelta(seconds=1800)


class TestGrants:
    @pytest.mark.asyncio
    async def test_client_credentials_form(self):
        server = TokenServer()
        resolver = make_resolver(server)

        await resolver.authorize(oauth_connector(None, scope="read write"), request())

        assert str(server.requests[0].url) == TOKEN_URL
        assert server.form() == {
            "grant_type": "client_credentials",
            "client_id": "cid",
            "client_secret": "cs",
            "scope": "read write",
        }

    @pytest.mark.asyncio
    async def test_authorization_code_uses_refresh_token(self):
        server = TokenServer(payload={"access_token": "fresh", "refresh_token": "rt-2"})
        resolver = make_resolver(server)
        connector = oauth_connector(
            None,
            grant_type="authorization_code",
            authorization_url="https://auth.example.com/authorize",
            redirect_uri="https://app.example.com/callback",
            refresh_token="rt-1",
        )

        authorized = await resolver.authorize(connector, request())

        assert server.form() == {
            "grant_type": "refresh_token",
            "refresh_token": "rt-1",
            "client_id": "cid",
        }
        assert server.requests[0].headers["authorization"] == basic_auth_header("cid", "cs")
        assert authorized.connector.auth.refresh_token == "rt-2"

    @pytest.mark.asyncio
    async def test_authorization_code_without_refresh_token(self):
        server = TokenServer()
        resolver = make_resolver(server)
        connector = oauth_connector(
            None,
            grant_type="authorization_code",
            authorization_url="https://auth.example.com/authorize",
            redirect_uri="https://app.example.com/callback",
        )

        with pytest.raises(AuthError, match="re-authorized") as exc_info:
            await resolver.authorize(connector, request())

        assert server.requests == []
        assert exc_info.value.connector.auth.needs_reauth is True

    @pytest.mark.asyncio
    async def test_rejected_refresh_marks_needs_reauth(self):
        server = TokenServer(status_code=400, payload={"error": "invalid_grant"})
        resolver = make_resolver(server)
        connector = oauth_connector(
            timedelta(seconds=-1),
            grant_type="authorization_code",
            authorization_url="https://auth.example.com/authorize",
            redirect_uri="https://app.example.com/callback",
            refresh_token="revoked",
        )

        with pytest.raises(AuthError) as exc_info:
            await resolver.authorize(connector, request())

        assert exc_info.value.http_status == 400
        assert exc_info.value.connector.auth.needs_reauth is True

    @pytest.mark.asyncio
    async def test_client_credentials_failure_has_no_connector(self):
        resolver = make_resolver(TokenServer(status_code=401, payload={"error": "nope"}))

        with pytest.raises(AuthError, match="Token endpoint returned 401") as exc_info:
            await resolver.authorize(oauth_connector(None), request())

        assert exc_info.value.connector is None

    @pytest.mark.asyncio
    async def test_response_without_access_token(self):
        resolver = make_resolver(TokenServer(payload={"token_type": "bearer"}))

        with pytest.raises(AuthError, match="No access token"):
            await resolver.authorize(oauth_connector(None), request())

    @pytest.mark.asyncio
    async def test_refresh_rejects_non_oauth_connector(self):
        resolver = make_resolver(TokenServer())
        connector = ConnectorConfig(base_url="https://x.example.com", auth=NoAuth())

        with pytest.raises(AuthError, match="does not use OAuth2"):
            await resolver.refresh(connector, force=True)


class TestConcurrentRefresh:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        server = TokenServer()
        resolver = make_resolver(server)
        connector = oauth_connector(timedelta(seconds=-5))

        results = await asyncio.gather(
            *(resolver.authorize(connector, request()) for _ in range(5))
        )

        assert len(server.requests) == 1
        assert {r.request.headers["Authorization"] for r in results} == {"Bearer new-token"}

    @pytest.mark.asyncio
    async def test_forced_refresh_always_fetches(self):
        server = TokenServer()
        resolver = make_resolver(server)
        connector = oauth_connector(timedelta(hours=1))

        await resolver.refresh(connector, force=True)
        await resolver.refresh(connector, force=True)

        assert len(server.requests) == 2


class TestCredentialIsolation:
    @pytest.mark.asyncio
    async def test_inline_connector_with_wrong_secret_gets_its_own_token(self):
        server = TokenServer(payload={"access_token": "owner-token", "refresh_token": "owner-rt"})
        resolver = make_resolver(server)
        owner = oauth_connector(None)
        owner = owner.model_copy(update={"id": None})
        await resolver.authorize(owner, request())

        server.payload = {"access_token": "intruder-token"}
        intruder = owner.model_copy(
            update={"auth": owner.auth.model_copy(update={"client_secret": "guessed"})}
        )
        authorized = await resolver.authorize(intruder, request())

        assert len(server.requests) == 2
        assert server.form()["client_secret"] == "guessed"
        assert authorized.connector.auth.access_token == "intruder-token"
        assert authorized.connector.auth.refresh_token is None

    @pytest.mark.asyncio
    async def test_edited_stored_connector_fetches_new_token(self):
        server = TokenServer()
        resolver = make_resolver(server)
        connector = oauth_connector(timedelta(seconds=-5))
        await resolver.refresh(connector)

        edited = connector.model_copy(
            update={"auth": connector.auth.model_copy(update={"client_secret": "rotated"})}
        )
        await resolver.refresh(edited)

        assert len(server.requests) == 2
        assert server.form()["client_secret"] == "rotated"

    def test_fingerprint_covers_every_credential_field(self):
        base = oauth_connector(None).auth
        variants = [
            {"token_url": "https://other.example.com/token"},
            {"client_id": "other"},
            {"client_secret": "other"},
            {"scope": "admin"},
            {"grant_type": "authorization_code"},
            {"refresh_token": "rt"},
        ]

        fingerprints = {credential_fingerprint(base.model_copy(update=v)) for v in variants}

        assert len(fingerprints) == len(variants)
        assert credential_fingerprint(base) not in fingerprints
        # Token state does not change which credentials are in play
        assert credential_fingerprint(base.model_copy(update={"access_token": "x"})) == (
            credential_fingerprint(base)
        )


class TestCachePruning:
    @pytest.mark.asyncio
    async def test_expired_entries_are_dropped(self):
        now = [NOW]
        server = TokenServer(payload={"access_token": "t", "expires_in": 600})
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        resolver = ConnectorAuthResolver(client, clock=lambda: now[0])
        first = oauth_connector(None)
        second = oauth_connector(None)

        await resolver.refresh(first)
        now[0] = NOW + timedelta(hours=1)
        await resolver.refresh(second)

        assert set(resolver._fresh) == {second.id}
        assert set(resolver._locks) == {second.id}

    @pytest.mark.asyncio
    async def test_live_entries_are_kept(self):
        server = TokenServer()
        resolver = make_resolver(server)
        first = oauth_connector(None)
        second = oauth_connector(None)

        await resolver.refresh(first)
        await resolver.refresh(second)

        assert set(resolver._fresh) == {first.id, second.id}


def code_connector(**auth_fields) -> ConnectorConfig:
    fields = {
        "grant_type": "authorization_code",
        "authorization_url": "https://auth.example.com/authorize",
        "redirect_uri": "https://app.example.com/api/v1/oauth/callback",
        "scope": "contacts.read",
        **auth_fields,
    }
    return oauth_connector(None, **fields)


class TestAuthorizationCode:
    def test_authorization_url(self):
        url = authorization_url(code_connector().auth, "state-123")

        parts = urlsplit(url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://auth.example.com/authorize"
        assert {k: v[0] for k, v in parse_qs(parts.query).items()} == {
            "response_type": "code",
            "client_id": "cid",
            "redirect_uri": "https://app.example.com/api/v1/oauth/callback",
            "state": "state-123",
            "scope": "contacts.read",
        }

    def test_authorization_url_keeps_existing_query(self):
        connector = code_connector(
            authorization_url="https://auth.example.com/authorize?prompt=consent"
        )
        url = authorization_url(connector.auth, "s")

        assert url.startswith("https://auth.example.com/authorize?prompt=consent&")

    def test_authorization_url_requires_redirect_uri(self):
        auth = code_connector().auth.model_copy(update={"redirect_uri": None})

        with pytest.raises(AuthError, match="redirect_uri"):
            authorization_url(auth, "s")

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        server = TokenServer(
            payload={"access_token": "first", "refresh_token": "rt-1", "expires_in": 900}
        )
        resolver = make_resolver(server)
        connector = code_connector(needs_reauth=True)

        connected = await resolver.exchange_code(connector, "auth-code")

        assert server.form() == {
            "grant_type": "authorization_code",
            "code": "auth-code",
            "redirect_uri": "https://app.example.com/api/v1/oauth/callback",
            "client_id": "cid",
        }
        assert server.requests[0].headers["authorization"] == basic_auth_header("cid", "cs")
        auth = connected.auth
        assert auth.access_token == "first"
        assert auth.refresh_token == "rt-1"
        assert auth.token_expires_at == NOW + timedelta(seconds=900)
        assert auth.needs_reauth is False

    @pytest.mark.asyncio
    async def test_exchange_code_rejected(self):
        resolver = make_resolver(TokenServer(status_code=400, payload={"error": "invalid_grant"}))

        with pytest.raises(AuthError, match="Token endpoint returned 400"):
            await resolver.exchange_code(code_connector(), "used-code")

    @pytest.mark.asyncio
    async def test_exchange_code_needs_authorization_code_grant(self):
        server = TokenServer()
        resolver = make_resolver(server)

        with pytest.raises(AuthError, match="authorization code flow"):
            await resolver.exchange_code(oauth_connector(None), "code")

        assert server.requests == []
