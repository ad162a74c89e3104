"""Tests for flow execution endpoints."""

import asyncio
from typing import Any

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from flowdash.core.security import create_access_token
from flowdash.models.flow import Flow
from flowdash.models.user import User


async def wait_for_execution(
    client: AsyncClient,
    headers: dict[str, str],
    execution_id: str,
    timeout: float = 5.0,
) -> dict[str, Any]:
    """Poll an execution until it leaves the running state."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        response = await client.get(f"/api/v1/executions/{execution_id}", headers=headers)
        assert response.status_code == 200
        execution = response.json()
        if execution["status"] != "running":
            return execution
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Execution {execution_id} still running after {timeout}s")
        await asyncio.sleep(0.05)


async def create_flow(client: AsyncClient, headers: dict[str, str], graph: dict) -> str:
    response = await client.post(
        "/api/v1/flows",
        headers=headers,
        json={"name": "Ad hoc", "graph": graph},
    )
    assert response.status_code == 201
    return response.json()["id"]


class TestExecuteFlow:
    @pytest.mark.asyncio
    async def test_execute_and_poll_until_success(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_flow: Flow,
    ):
        response = await client.post(
            f"/api/v1/flows/{test_flow.id}/execute",
            headers=auth_headers,
            json={"input": {"x": 2}},
        )

        assert response.status_code == 202
        started = response.json()
        assert started["status"] == "running"

        execution = await wait_for_execution(client, auth_headers, started["execution_id"])

        assert execution["status"] == "success"
        assert execution["flow_id"] == test_flow.id
        assert execution["input_data"] == {"x": 2}
        assert execution["output_data"] == {"double": {"result": 6}}
        assert execution["node_states"] == {"compute": "success", "double": "success"}
        assert execution["error"] is None
        assert execution["finished_at"] is not None
        assert execution["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_execute_without_body(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
    ):
        flow_id = await create_flow(
            client,
            auth_headers,
            {"nodes": [{"id": "one", "type": "transform", "config": {"expression": "1"}}]},
        )

        response = await client.post(f"/api/v1/flows/{flow_id}/execute", headers=auth_headers)

        assert response.status_code == 202
        execution = await wait_for_execution(
            client, auth_headers, response.json()["execution_id"]
        )
        assert execution["output_data"] == {"one": {"result": 1}}

    @pytest.mark.asyncio
    async def test_failed_node_fails_execution(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_flow: Flow,
    ):
        # compute needs input.x; without it the expression fails
        response = await client.post(
            f"/api/v1/flows/{test_flow.id}/execute",
            headers=auth_headers,
            json={"input": {}},
        )

        execution = await wait_for_execution(
            client, auth_headers, response.json()["execution_id"]
        )

        assert execution["status"] == "failed"
        assert execution["node_states"] == {"compute": "error", "double": "skipped"}
        assert execution["error"].startswith("compute: ")
        assert execution["output_data"] == {}

    @pytest.mark.asyncio
    async def test_malformed_stored_graph_returns_422(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        db_session: AsyncSession,
        test_user: User,
    ):
        flow = Flow(
            user_id=test_user.id,
            name="Broken",
            graph='{"nodes": [{"id": "a", "type": "transform", "config": {}}],'
            ' "edges": [{"source": "a", "target": "missing"}]}',
        )
        db_session.add(flow)
        await db_session.commit()

        response = await client.post(f"/api/v1/flows/{flow.id}/execute", headers=auth_headers)

        assert response.status_code == 422
        assert "missing" in response.json()["detail"]["message"]

        listing = await client.get("/api/v1/executions", headers=auth_headers)
        assert listing.json() == []

    @pytest.mark.asyncio
    async def test_execute_nonexistent_flow(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
    ):
        response = await client.post("/api/v1/flows/nope/execute", headers=auth_headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_tables_persist_between_nodes(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
    ):
        flow_id = await create_flow(
            client,
            auth_headers,
            {
                "nodes": [
                    {
                        "id": "save",
                        "type": "table_write",
                        "config": {"table_id": "leads", "data": {"email": "{{input.email}}"}},
                    },
                    {
                        "id": "load",
                        "type": "table_read",
                        "config": {"table_id": "leads", "filter": {"email": "{{input.email}}"}},
                    },
                ],
                "edges": [{"source": "save", "target": "load"}],
            },
        )

        response = await client.post(
            f"/api/v1/flows/{flow_id}/execute",
            headers=auth_headers,
            json={"input": {"email": "ada@example.com"}},
        )
        execution = await wait_for_execution(
            client, auth_headers, response.json()["execution_id"]
        )

        assert execution["status"] == "success"
        loaded = execution["output_data"]["load"]
        assert loaded["count"] == 1
        assert loaded["result"][0]["email"] == "ada@example.com"
        assert "id" in loaded["result"][0]


class TestExecutionEndpoints:
    @pytest.mark.asyncio
    async def test_logs_in_insertion_order(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_flow: Flow,
    ):
        response = await client.post(
            f"/api/v1/flows/{test_flow.id}/execute",
            headers=auth_headers,
            json={"input": {"x": 1}},
        )
        execution_id = response.json()["execution_id"]
        await wait_for_execution(client, auth_headers, execution_id)

        response = await client.get(
            f"/api/v1/executions/{execution_id}/logs", headers=auth_headers
        )

        assert response.status_code == 200
        logs = response.json()
        assert [line["sequence"] for line in logs] == sorted(line["sequence"] for line in logs)
        assert logs[0]["message"] == "Running transform node 'compute'"
        assert logs[0]["node_id"] == "compute"
        assert logs[-1]["message"] == "Execution finished with status success"

        newer = await client.get(
            f"/api/v1/executions/{execution_id}/logs",
            headers=auth_headers,
            params={"after": logs[-2]["sequence"]},
        )
        assert [line["message"] for line in newer.json()] == [logs[-1]["message"]]

    @pytest.mark.asyncio
    async def test_list_executions_by_flow_and_status(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_flow: Flow,
    ):
        for payload in ({"x": 1}, {}):
            response = await client.post(
                f"/api/v1/flows/{test_flow.id}/execute",
                headers=auth_headers,
                json={"input": payload},
            )
            await wait_for_execution(client, auth_headers, response.json()["execution_id"])

        everything = await client.get(
            "/api/v1/executions", headers=auth_headers, params={"flow_id": test_flow.id}
        )
        failed = await client.get(
            "/api/v1/executions", headers=auth_headers, params={"status": "failed"}
        )

        assert len(everything.json()) == 2
        assert [e["status"] for e in failed.json()] == ["failed"]

    @pytest.mark.asyncio
    async def test_other_user_cannot_read_execution(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_flow: Flow,
        other_user: User,
    ):
        response = await client.post(
            f"/api/v1/flows/{test_flow.id}/execute",
            headers=auth_headers,
            json={"input": {"x": 1}},
        )
        execution_id = response.json()["execution_id"]
        await wait_for_execution(client, auth_headers, execution_id)

        headers = {"Authorization": f"Bearer {create_access_token(other_user.id)}"}
        response = await client.get(f"/api/v1/executions/{execution_id}", headers=headers)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_execution(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
    ):
        response = await client.get("/api/v1/executions/unknown", headers=auth_headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_skip_after_finish_conflicts(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
        test_flow: Flow,
    ):
        response = await client.post(
            f"/api/v1/flows/{test_flow.id}/execute",
            headers=auth_headers,
            json={"input": {"x": 1}},
        )
        execution_id = response.json()["execution_id"]
        await wait_for_execution(client, auth_headers, execution_id)

        response = await client.post(
            f"/api/v1/executions/{execution_id}/nodes/double/skip",
            headers=auth_headers,
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_skip_during_run(
        self,
        client: AsyncClient,
        auth_headers: dict[str, str],
    ):
        flow_id = await create_flow(
            client,
            auth_headers,
            {
                "nodes": [
                    {"id": "wait", "type": "delay", "config": {"amount": 0.3}},
                    {"id": "notify", "type": "log", "config": {"message": "done"}},
                ],
                "edges": [{"source": "wait", "target": "notify"}],
            },
        )
        response = await client.post(f"/api/v1/flows/{flow_id}/execute", headers=auth_headers)
        execution_id = response.json()["execution_id"]

        response = await client.post(
            f"/api/v1/executions/{execution_id}/nodes/notify/skip",
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "execution_id": execution_id,
            "node_id": "notify",
            "action": "skip",
        }
        execution = await wait_for_execution(client, auth_headers, execution_id)
        assert execution["status"] == "success"
        assert execution["node_states"] == {"wait": "success", "notify": "skipped"}
