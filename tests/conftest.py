"""Pytest configuration and fixtures.

Provides common fixtures for all tests including:
- Database sessions
- Test users
- Authentication tokens
- In-memory engine collaborators
"""

import os
import tempfile
from typing import AsyncGenerator, Callable
from uuid import uuid4

# Settings are read at import time; point them at a throwaway database
_TEST_DIR = tempfile.mkdtemp(prefix="flowdash-tests-")
os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
)
os.environ.setdefault("ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("EXECUTION_TIMEOUT", "30")

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from flowdash.api.deps import _async_session_maker, _engine
from flowdash.config import settings
from flowdash.core.connector_auth import ConnectorAuthResolver
from flowdash.core.encryption import AuthEncryption
from flowdash.core.execution_engine import FlowExecutionEngine
from flowdash.core.ports import InMemoryConnectorResolver, InMemoryTableStore
from flowdash.core.security import create_access_token, hash_password
from flowdash.core.sink import InMemoryExecutionSink
from flowdash.main import app
from flowdash.models.flow import Flow, FlowGraph
from flowdash.models.user import User
from flowdash.services.execution_service import init_execution_service

Handler = Callable[[httpx.Request], httpx.Response]


@pytest_asyncio.fixture
async def db_engine():
    """Create the schema on the test database and drop it afterwards."""
    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield _engine

    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    # Pooled connections are bound to this test's event loop
    await _engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session."""
    async with _async_session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_engine) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client.

    Requests use the application's own session maker so background
    executions see the same database.
    """
    init_execution_service(_async_session_maker)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    user = User(
        id=str(uuid4()),
        username="tester",
        email="test@example.com",
        hashed_password=hash_password("testpassword123"),
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    user = User(
        id=str(uuid4()),
        username="someone-else",
        hashed_password=hash_password("testpassword123"),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user_token(test_user: User) -> str:
    """Create an access token for test user."""
    return create_access_token(test_user.id)


@pytest_asyncio.fixture
async def auth_headers(test_user_token: str) -> dict[str, str]:
    """Create authentication headers."""
    return {"Authorization": f"Bearer {test_user_token}"}


@pytest_asyncio.fixture
async def test_flow(db_session: AsyncSession, test_user: User) -> Flow:
    """Create a stored two-node flow: compute -> double."""
    graph = FlowGraph.model_validate(
        {
            "nodes": [
                {"id": "compute", "type": "transform", "config": {"expression": "input.x + 1"}},
                {
                    "id": "double",
                    "type": "transform",
                    "config": {"expression": "compute.result * 2"},
                },
            ],
            "edges": [{"source": "compute", "target": "double"}],
        }
    )
    flow = Flow(user_id=test_user.id, name="Test Flow", graph=graph.model_dump_json())
    db_session.add(flow)
    await db_session.commit()
    await db_session.refresh(flow)
    return flow


@pytest.fixture
def encryption() -> AuthEncryption:
    """Create encryption instance."""
    return AuthEncryption(settings.encryption_key.get_secret_value())


@pytest.fixture
def sink() -> InMemoryExecutionSink:
    return InMemoryExecutionSink()


@pytest.fixture
def tables() -> InMemoryTableStore:
    return InMemoryTableStore()


@pytest.fixture
def connectors() -> InMemoryConnectorResolver:
    return InMemoryConnectorResolver()


@pytest.fixture
def make_engine(
    sink: InMemoryExecutionSink,
    tables: InMemoryTableStore,
    connectors: InMemoryConnectorResolver,
):
    """Build an engine whose outbound HTTP is served by `handler`."""

    def factory(handler: Handler | None = None, **kwargs) -> FlowExecutionEngine:
        transport = httpx.MockTransport(handler or (lambda request: httpx.Response(200)))
        http_client = httpx.AsyncClient(transport=transport)
        kwargs.setdefault("auth", ConnectorAuthResolver(http_client))
        return FlowExecutionEngine(
            sink=sink,
            connectors=connectors,
            tables=tables,
            http_client=http_client,
            **kwargs,
        )

    return factory
