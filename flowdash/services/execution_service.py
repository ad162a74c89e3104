"""Execution service.

Handles the flow execution lifecycle: starting runs as background
tasks, inspecting them, streaming their events and routing operator
control signals (skip / delete a pending node) to the running engine.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from flowdash.core.errors import GraphError
from flowdash.core.execution_engine import ExecutionControl, FlowExecutionEngine
from flowdash.core.sink import ExecutionEvent, status_event
from flowdash.models.execution import (
    Execution,
    ExecutionLog,
    ExecutionLogRead,
    ExecutionRead,
    ExecutionStatus,
)
from flowdash.models.flow import FlowGraph
from flowdash.services.connector_service import (
    ConnectorService,
    SqlConnectorResolver,
    get_auth_resolver,
)
from flowdash.services.execution_sink import SqlExecutionSink, get_broker
from flowdash.services.flow_service import FlowService
from flowdash.services.table_store import SqlTableStore

logger = structlog.get_logger()

# Will be set by init_execution_service
_session_maker: sessionmaker | None = None

# Control handles of executions running in this process
_controls: dict[str, ExecutionControl] = {}
_tasks: set[asyncio.Task] = set()


def init_execution_service(session_maker: sessionmaker) -> None:
    """Initialize execution service with session maker.

    Args:
        session_maker: SQLAlchemy async session maker
    """
    global _session_maker
    _session_maker = session_maker
    logger.info("execution_service_initialized")


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class ExecutionServiceError(Exception):
    """Error in execution service operations."""

    pass


class ExecutionNotFoundError(ExecutionServiceError):
    """Execution not found."""

    pass


class ExecutionAccessDeniedError(ExecutionServiceError):
    """User doesn't have access to execution."""

    pass


class ExecutionGraphError(ExecutionServiceError):
    """Flow graph cannot be executed."""

    def __init__(self, message: str, details: dict[str, Any]) -> None:
        super().__init__(message)
        self.details = details


class ExecutionService:
    """Service for managing flow executions.

    Handles:
    - Creating and starting executions
    - Tracking execution status and logs
    - Streaming execution events
    - Skip / delete control signals

    Example usage:
        service = ExecutionService(session, flow_service)

        execution = await service.start(
            user_id="user-123",
            flow_id="flow-456",
            input_data={"message": "Hello"},
        )

        async for event in service.stream(execution.id, "user-123"):
            print(event.type, event.data)
    """

    def __init__(self, session: AsyncSession, flow_service: FlowService) -> None:
        self._session = session
        self._flow_service = flow_service

    async def start(
        self,
        user_id: str,
        flow_id: str,
        input_data: Any = None,
    ) -> ExecutionRead:
        """Snapshot the flow graph, create an execution and run it in the background.

        Raises:
            FlowNotFoundError: If flow doesn't exist
            FlowAccessDeniedError: If user doesn't own flow
            ExecutionGraphError: If the graph is malformed
        """
        if _session_maker is None:
            raise ExecutionServiceError("Execution service not initialized")

        flow = await self._flow_service.get_entity(flow_id, user_id)
        graph = flow.get_graph()

        engine = FlowExecutionEngine(sink=SqlExecutionSink(_session_maker))
        try:
            engine.compile(graph)
        except GraphError as e:
            logger.warning("execution_rejected", flow_id=flow_id, error=e.message)
            raise ExecutionGraphError(e.message, e.details) from e

        execution = Execution(
            flow_id=flow_id,
            user_id=user_id,
            status=ExecutionStatus.RUNNING,
        )
        execution.set_input_data(input_data)

        self._session.add(execution)
        await self._session.commit()
        await self._session.refresh(execution)

        control = ExecutionControl()
        _controls[execution.id] = control
        get_broker().open(execution.id)

        task = asyncio.create_task(
            _run_execution_background(execution.id, user_id, graph, input_data, control)
        )
        _tasks.add(task)
        task.add_done_callback(_tasks.discard)

        logger.info(
            "execution_started",
            execution_id=execution.id,
            flow_id=flow_id,
            user_id=user_id,
            flow_version=flow.version,
        )

        return self._to_read(execution)

    async def get(self, execution_id: str, user_id: str) -> ExecutionRead:
        """Get an execution.

        Raises:
            ExecutionNotFoundError: If execution doesn't exist
            ExecutionAccessDeniedError: If user doesn't own execution
        """
        execution = await self._get_and_verify(execution_id, user_id)
        return self._to_read(execution)

    async def list_all(
        self,
        user_id: str,
        flow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionRead]:
        """List user's executions, newest first."""
        query = (
            select(Execution)
            .where(Execution.user_id == user_id)
            .order_by(Execution.started_at.desc())
            .limit(limit)
            .offset(offset)
        )

        if flow_id:
            query = query.where(Execution.flow_id == flow_id)
        if status:
            query = query.where(Execution.status == status)

        result = await self._session.execute(query)
        return [self._to_read(e) for e in result.scalars().all()]

    async def logs(
        self,
        execution_id: str,
        user_id: str,
        after_sequence: int | None = None,
    ) -> list[ExecutionLogRead]:
        """Get the stored log lines of an execution in insertion order."""
        await self._get_and_verify(execution_id, user_id)

        query = (
            select(ExecutionLog)
            .where(ExecutionLog.execution_id == execution_id)
            .order_by(ExecutionLog.sequence)
        )
        if after_sequence is not None:
            query = query.where(ExecutionLog.sequence > after_sequence)

        result = await self._session.execute(query)
        return [
            ExecutionLogRead(
                sequence=row.sequence,
                node_id=row.node_id,
                timestamp=row.timestamp,
                level=row.level,
                message=row.message,
                data=row.get_data(),
            )
            for row in result.scalars().all()
        ]

    async def stream(self, execution_id: str, user_id: str) -> AsyncIterator[ExecutionEvent]:
        """Get the event stream of an execution.

        History is replayed first; the stream ends after the terminal status.
        """
        await self._get_and_verify(execution_id, user_id)
        if _session_maker is None:
            raise ExecutionServiceError("Execution service not initialized")
        return SqlExecutionSink(_session_maker).subscribe(execution_id)

    async def skip_node(self, execution_id: str, user_id: str, node_id: str) -> dict[str, Any]:
        """Mark a not-yet-started node as skipped."""
        control = await self._get_control(execution_id, user_id, node_id)
        control.skip(node_id)
        logger.info("execution_node_skip_requested", execution_id=execution_id, node_id=node_id)
        return {"execution_id": execution_id, "node_id": node_id, "action": "skip"}

    async def delete_node(self, execution_id: str, user_id: str, node_id: str) -> dict[str, Any]:
        """Remove a not-yet-started node and its edges from the run."""
        control = await self._get_control(execution_id, user_id, node_id)
        control.delete(node_id)
        logger.info("execution_node_delete_requested", execution_id=execution_id, node_id=node_id)
        return {"execution_id": execution_id, "node_id": node_id, "action": "delete"}

    async def _get_control(
        self,
        execution_id: str,
        user_id: str,
        node_id: str,
    ) -> ExecutionControl:
        execution = await self._get_and_verify(execution_id, user_id)
        control = _controls.get(execution_id)
        if execution.status.is_terminal or control is None:
            raise ExecutionServiceError(
                f"Cannot change node '{node_id}': execution is {execution.status.value}"
            )
        return control

    async def _get_and_verify(self, execution_id: str, user_id: str) -> Execution:
        """Get execution and verify ownership.

        Raises:
            ExecutionNotFoundError: If not found
            ExecutionAccessDeniedError: If wrong owner
        """
        query = select(Execution).where(Execution.id == execution_id)
        result = await self._session.execute(query)
        execution = result.scalar_one_or_none()

        if execution is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")

        if execution.user_id != user_id:
            logger.warning(
                "execution_access_denied",
                execution_id=execution_id,
                requested_by=user_id,
                owner=execution.user_id,
            )
            raise ExecutionAccessDeniedError("Access denied to execution")

        return execution

    def _to_read(self, execution: Execution) -> ExecutionRead:
        """Convert execution entity to read schema."""
        return ExecutionRead(
            id=execution.id,
            flow_id=execution.flow_id,
            user_id=execution.user_id,
            status=execution.status,
            input_data=execution.get_input_data(),
            output_data=execution.get_output_data(),
            node_states=execution.get_node_states(),
            error=execution.error,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
            duration_ms=execution.duration_ms,
        )


async def _run_execution_background(
    execution_id: str,
    user_id: str,
    graph: FlowGraph,
    input_data: Any,
    control: ExecutionControl,
) -> None:
    """Run an execution with its own database session.

    Creates a new session to avoid sharing state with the request session.
    """
    assert _session_maker is not None
    sink = SqlExecutionSink(_session_maker)

    async with _session_maker() as session:
        connector_service = ConnectorService(session)
        engine = FlowExecutionEngine(
            sink=sink,
            connectors=SqlConnectorResolver(connector_service, user_id),
            tables=SqlTableStore(session, user_id),
            auth=get_auth_resolver(),
        )
        try:
            await engine.execute(
                graph,
                input_data,
                execution_id=execution_id,
                user_id=user_id,
                control=control,
            )
        except Exception as e:
            logger.exception(
                "background_execution_failed",
                execution_id=execution_id,
                error=str(e),
            )
            await _mark_crashed(execution_id, f"{type(e).__name__}: {e}")
        finally:
            _controls.pop(execution_id, None)


async def _mark_crashed(execution_id: str, error: str) -> None:
    """Finalize an execution whose run raised, so subscribers are released."""
    assert _session_maker is not None
    async with _session_maker() as session:
        execution = await session.get(Execution, execution_id)
        if execution is not None and not execution.status.is_terminal:
            execution.mark_finished(ExecutionStatus.FAILED, None, {}, error=error)
            await session.commit()

    broker = get_broker()
    event = status_event(execution_id, broker.next_sequence(execution_id), ExecutionStatus.FAILED)
    event.data["error"] = error
    broker.publish(event)
