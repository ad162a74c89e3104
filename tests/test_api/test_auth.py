"""Tests for account endpoints."""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from flowdash.core.security import create_access_token
from flowdash.models.user import User


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_returns_session(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/auth/register",
            json={
                "username": "newcomer",
                "password": "long-enough-pw",
                "display_name": "New Comer",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 30 * 60
        assert data["user"]["username"] == "newcomer"
        assert data["user"]["display_name"] == "New Comer"
        assert "hashed_password" not in data["user"]

        me = await client.get(
            "/api/v1/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"}
        )
        assert me.status_code == 200
        assert me.json()["id"] == data["user"]["id"]

    @pytest.mark.asyncio
    async def test_duplicate_username(self, client: AsyncClient, test_user: User):
        response = await client.post(
            "/api/v1/auth/register",
            json={"username": test_user.username, "password": "long-enough-pw"},
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_duplicate_email(self, client: AsyncClient, test_user: User):
        response = await client.post(
            "/api/v1/auth/register",
            json={"username": "fresh-name", "password": "long-enough-pw", "email": test_user.email},
        )

        assert response.status_code == 409


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_by_username(self, client: AsyncClient, test_user: User):
        response = await client.post(
            "/api/v1/auth/login",
            json={"login": test_user.username, "password": "testpassword123"},
        )

        assert response.status_code == 200
        assert response.json()["user"]["id"] == test_user.id

    @pytest.mark.asyncio
    async def test_login_by_email(self, client: AsyncClient, test_user: User):
        response = await client.post(
            "/api/v1/auth/login",
            json={"login": "test@example.com", "password": "testpassword123"},
        )

        assert response.status_code == 200
        assert response.json()["user"]["username"] == test_user.username

    @pytest.mark.asyncio
    async def test_wrong_password(self, client: AsyncClient, test_user: User):
        response = await client.post(
            "/api/v1/auth/login",
            json={"login": test_user.username, "password": "not-the-password"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_disabled_account(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        test_user: User,
    ):
        test_user.is_active = False
        db_session.add(test_user)
        await db_session.commit()

        response = await client.post(
            "/api/v1/auth/login",
            json={"login": test_user.username, "password": "testpassword123"},
        )

        assert response.status_code == 403


class TestCurrentUser:
    @pytest.mark.asyncio
    async def test_invalid_token(self, client: AsyncClient):
        response = await client.get(
            "/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_token(self, client: AsyncClient):
        response = await client.get("/api/v1/auth/me")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token(self, client: AsyncClient, test_user: User):
        issued = datetime.now(timezone.utc) - timedelta(days=1)
        token = create_access_token(test_user.id, now=issued)

        response = await client.get(
            "/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_update_profile(
        self,
        client: AsyncClient,
        test_user: User,
        auth_headers: dict[str, str],
    ):
        response = await client.patch(
            "/api/v1/auth/me",
            json={"display_name": "Tess", "photo_url": "https://img.example.com/t.png"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["display_name"] == "Tess"
        assert data["photo_url"] == "https://img.example.com/t.png"
        assert data["email"] == test_user.email

    @pytest.mark.asyncio
    async def test_update_to_taken_email(
        self,
        client: AsyncClient,
        test_user: User,
        other_user: User,
    ):
        headers = {"Authorization": f"Bearer {create_access_token(other_user.id)}"}

        response = await client.patch(
            "/api/v1/auth/me", json={"email": test_user.email}, headers=headers
        )

        assert response.status_code == 409
