"""Tests for the connector service."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from flowdash.core.connector_auth import ConnectorAuthResolver, basic_auth_header
from flowdash.core.encryption import mask_secret
from flowdash.models.connector import ConnectorCreate, ConnectorUseRequest
from flowdash.models.user import User
from flowdash.services.connector_service import (
    ConnectorAccessDeniedError,
    ConnectorService,
    ConnectorValidationError,
)

TOKEN_URL = "https://auth.example.com/token"


class FakeUpstream:
    """Serves the token endpoint and a small JSON API."""

    def __init__(self, api_status: int = 200) -> None:
        self.api_status = api_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600})
        return httpx.Response(self.api_status, json={"path": request.url.path})

    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) != TOKEN_URL]

    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == TOKEN_URL]


def oauth_auth(**overrides) -> dict:
    return {
        "type": "oauth2",
        "oauth2Type": "client_credentials",
        "tokenUrl": TOKEN_URL,
        "clientId": "cid",
        "clientSecret": "cs",
        **overrides,
    }


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def service(db_session: AsyncSession, upstream: FakeUpstream) -> ConnectorService:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return ConnectorService(
        db_session,
        auth_resolver=ConnectorAuthResolver(http_client),
        http_client=http_client,
    )


class TestUseConnector:
    @pytest.mark.asyncio
    async def test_stored_basic_connector(
        self,
        service: ConnectorService,
        upstream: FakeUpstream,
        test_user: User,
    ):
        connector = await service.create(
            test_user.id,
            ConnectorCreate(
                name="Billing",
                base_url="https://billing.example.com/api",
                auth={"type": "basic", "username": "svc", "password": "pw"},
                headers={"X-Team": "ops"},
            ),
        )

        result = await service.use_connector(
            test_user.id,
            ConnectorUseRequest(connector_id=connector.id, endpoint="/invoices"),
        )

        assert result["success"] is True
        assert result["status"] == 200
        assert result["data"] == {"path": "/api/invoices"}
        assert result["token_refreshed"] is False
        assert "updated_auth" not in result
        sent = upstream.api_requests()[0]
        assert sent.headers["authorization"] == basic_auth_header("svc", "pw")
        assert sent.headers["x-team"] == "ops"

    @pytest.mark.asyncio
    async def test_inline_connector_returns_updated_auth(
        self,
        service: ConnectorService,
        upstream: FakeUpstream,
        test_user: User,
    ):
        result = await service.use_connector(
            test_user.id,
            ConnectorUseRequest(
                connector={"baseUrl": "https://crm.example.com", "auth": oauth_auth()},
                endpoint="contacts",
                method="post",
                data={"name": "Ada"},
            ),
        )

        assert result["success"] is True
        assert result["token_refreshed"] is True
        assert result["updated_auth"]["accessToken"] == "fresh-token"
        assert result["updated_auth"]["oauth2Type"] == "client_credentials"
        sent = upstream.api_requests()[0]
        assert sent.method == "POST"
        assert sent.headers["authorization"] == "Bearer fresh-token"

    @pytest.mark.asyncio
    async def test_stored_connector_saves_refreshed_token(
        self,
        service: ConnectorService,
        upstream: FakeUpstream,
        test_user: User,
    ):
        expired = datetime.now(timezone.utc) - timedelta(minutes=5)
        connector = await service.create(
            test_user.id,
            ConnectorCreate(
                name="CRM",
                base_url="https://crm.example.com",
                auth=oauth_auth(accessToken="stale", tokenExpiresAt=expired.isoformat()),
            ),
        )

        result = await service.use_connector(
            test_user.id,
            ConnectorUseRequest(connector_id=connector.id, endpoint="contacts"),
        )

        assert result["token_refreshed"] is True
        assert "updated_auth" not in result
        config = await service.get_config(connector.id, test_user.id)
        assert config.auth.access_token == "fresh-token"

    @pytest.mark.asyncio
    async def test_network_failure_is_reported(self, db_session: AsyncSession, test_user: User):
        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(unreachable))
        service = ConnectorService(
            db_session,
            auth_resolver=ConnectorAuthResolver(http_client),
            http_client=http_client,
        )

        result = await service.use_connector(
            test_user.id,
            ConnectorUseRequest(connector={"base_url": "https://down.example.com"}),
        )

        assert result["success"] is False
        assert result["status"] == 0
        assert result["status_text"] == "ConnectError"

    @pytest.mark.asyncio
    async def test_requires_a_target(self, service: ConnectorService, test_user: User):
        with pytest.raises(ConnectorValidationError):
            await service.use_connector(test_user.id, ConnectorUseRequest(endpoint="/x"))

    @pytest.mark.asyncio
    async def test_other_users_connector(
        self,
        service: ConnectorService,
        test_user: User,
        other_user: User,
    ):
        connector = await service.create(
            test_user.id,
            ConnectorCreate(name="Private", base_url="https://x.example.com"),
        )

        with pytest.raises(ConnectorAccessDeniedError):
            await service.use_connector(
                other_user.id, ConnectorUseRequest(connector_id=connector.id)
            )


class TestTestConnector:
    @pytest.mark.asyncio
    async def test_successful_connection(self, service: ConnectorService, test_user: User):
        result = await service.test_connector(
            test_user.id, connector={"base_url": "https://ok.example.com"}
        )

        assert result["success"] is True
        assert result["message"] == "Connection successful"
        assert result["details"]["status"] == 200

    @pytest.mark.asyncio
    async def test_error_status(
        self,
        service: ConnectorService,
        upstream: FakeUpstream,
        test_user: User,
    ):
        upstream.api_status = 401

        result = await service.test_connector(
            test_user.id, connector={"base_url": "https://locked.example.com"}
        )

        assert result["success"] is False
        assert result["message"] == "Connection failed with status 401"
        assert result["details"]["response"] == {"path": "/"}


class TestOAuthRefresh:
    @pytest.mark.asyncio
    async def test_forced_refresh_is_persisted_and_masked(
        self,
        service: ConnectorService,
        upstream: FakeUpstream,
        test_user: User,
    ):
        connector = await service.create(
            test_user.id,
            ConnectorCreate(name="CRM", base_url="https://crm.example.com", auth=oauth_auth()),
        )

        result = await service.oauth_refresh(test_user.id, connector.id)

        assert result["success"] is True
        assert result["access_token"] == mask_secret("fresh-token")
        assert result["access_token"] != "fresh-token"
        assert len(upstream.token_requests()) == 1
        config = await service.get_config(connector.id, test_user.id)
        assert config.auth.access_token == "fresh-token"
        assert config.auth.last_refreshed is not None

        read = await service.get(connector.id, test_user.id)
        assert read.token_status.has_access_token is True

    @pytest.mark.asyncio
    async def test_non_oauth_connector(self, service: ConnectorService, test_user: User):
        connector = await service.create(
            test_user.id,
            ConnectorCreate(name="Open", base_url="https://open.example.com"),
        )

        result = await service.oauth_refresh(test_user.id, connector.id)

        assert result == {"success": False, "error": "Connector does not use OAuth2"}


def code_auth(**overrides) -> dict:
    return oauth_auth(
        oauth2Type="authorization_code",
        authorizationUrl="https://auth.example.com/authorize",
        redirectUri="https://app.example.com/api/v1/oauth/callback",
        **overrides,
    )


class TestAuthorizationCodeFlow:
    @pytest.mark.asyncio
    async def test_authorize_then_callback_stores_tokens(
        self,
        service: ConnectorService,
        upstream: FakeUpstream,
        test_user: User,
    ):
        connector = await service.create(
            test_user.id,
            ConnectorCreate(name="CRM", base_url="https://crm.example.com", auth=code_auth()),
        )

        started = await service.start_authorization(test_user.id, connector.id)
        query = parse_qs(urlsplit(started["authorization_url"]).query)
        assert query["state"] == [started["state"]]
        assert query["response_type"] == ["code"]

        result = await service.complete_authorization(started["state"], "the-code")

        assert result["success"] is True
        assert result["access_token"] == mask_secret("fresh-token")
        form = parse_qs(upstream.token_requests()[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        config = await service.get_config(connector.id, test_user.id)
        assert config.auth.access_token == "fresh-token"
        assert config.auth.token_expires_at is not None

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, service: ConnectorService, test_user: User):
        connector = await service.create(
            test_user.id,
            ConnectorCreate(name="CRM", base_url="https://crm.example.com", auth=code_auth()),
        )
        started = await service.start_authorization(test_user.id, connector.id)
        await service.complete_authorization(started["state"], "the-code")

        with pytest.raises(ConnectorValidationError, match="state"):
            await service.complete_authorization(started["state"], "the-code")

    @pytest.mark.asyncio
    async def test_unknown_state(self, service: ConnectorService):
        with pytest.raises(ConnectorValidationError):
            await service.complete_authorization("made-up", "code")

    @pytest.mark.asyncio
    async def test_client_credentials_connector_cannot_authorize(
        self,
        service: ConnectorService,
        test_user: User,
    ):
        connector = await service.create(
            test_user.id,
            ConnectorCreate(name="CRM", base_url="https://crm.example.com", auth=oauth_auth()),
        )

        with pytest.raises(ConnectorValidationError):
            await service.start_authorization(test_user.id, connector.id)

    @pytest.mark.asyncio
    async def test_direct_exchange_clears_needs_reauth(
        self,
        service: ConnectorService,
        test_user: User,
    ):
        connector = await service.create(
            test_user.id,
            ConnectorCreate(
                name="CRM",
                base_url="https://crm.example.com",
                auth=code_auth(needsReauth=True),
            ),
        )

        result = await service.exchange_code(test_user.id, connector.id, "the-code")

        assert result["success"] is True
        read = await service.get(connector.id, test_user.id)
        assert read.token_status.needs_reauth is False
        assert read.token_status.has_access_token is True

    @pytest.mark.asyncio
    async def test_rejected_code(
        self,
        db_session: AsyncSession,
        test_user: User,
    ):
        def reject(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(reject))
        service = ConnectorService(
            db_session,
            auth_resolver=ConnectorAuthResolver(http_client),
            http_client=http_client,
        )
        connector = await service.create(
            test_user.id,
            ConnectorCreate(name="CRM", base_url="https://crm.example.com", auth=code_auth()),
        )

        result = await service.exchange_code(test_user.id, connector.id, "stale-code")

        assert result == {"success": False, "error": "Token endpoint returned 400"}
        config = await service.get_config(connector.id, test_user.id)
        assert config.auth.access_token is None


class TestBodyTokenPlacement:
    @pytest.mark.asyncio
    async def test_connection_test_sends_token_in_query(
        self,
        service: ConnectorService,
        upstream: FakeUpstream,
        test_user: User,
    ):
        result = await service.test_connector(
            test_user.id,
            connector={
                "base_url": "https://crm.example.com",
                "auth": oauth_auth(tokenLocation="body"),
            },
        )

        assert result["success"] is True
        sent = upstream.api_requests()[0]
        assert sent.method == "GET"
        assert sent.url.params["access_token"] == "fresh-token"
        assert "authorization" not in sent.headers
