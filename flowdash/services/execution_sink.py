"""SQL-backed execution sink.

Persists log lines as ExecutionLog rows and the final state on the
Execution row, then publishes each event to the in-process broker so
live subscribers see it before the call returns. Executions the broker
no longer remembers are replayed from the database.
"""

import json
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from flowdash.core.execution_engine import ExecutionResult
from flowdash.core.sink import (
    ExecutionBroker,
    ExecutionEvent,
    LogEntry,
    log_event,
    status_event,
)
from flowdash.models.execution import Execution, ExecutionLog, ExecutionStatus

logger = structlog.get_logger()

_broker = ExecutionBroker()


def get_broker() -> ExecutionBroker:
    return _broker


class SqlExecutionSink:
    """ExecutionSink that writes through to the database.

    Each call uses its own short-lived session so the sink never shares
    transaction state with the nodes of the run.
    """

    def __init__(
        self,
        session_maker: sessionmaker,
        broker: ExecutionBroker | None = None,
    ) -> None:
        self._session_maker = session_maker
        self.broker = broker or _broker

    async def append(self, execution_id: str, entry: LogEntry) -> None:
        sequence = self.broker.next_sequence(execution_id)
        async with self._session_maker() as session:
            session.add(
                ExecutionLog(
                    execution_id=execution_id,
                    sequence=sequence,
                    node_id=entry.node_id,
                    timestamp=entry.timestamp,
                    level=entry.level,
                    message=entry.message,
                    data=json.dumps(entry.data, default=str) if entry.data is not None else None,
                )
            )
            await session.commit()
        self.broker.publish(log_event(execution_id, sequence, entry))

    async def set_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: ExecutionResult | None = None,
    ) -> None:
        sequence = self.broker.next_sequence(execution_id)
        async with self._session_maker() as session:
            execution = await session.get(Execution, execution_id)
            if execution is None:
                logger.warning("execution_row_missing", execution_id=execution_id)
            elif status.is_terminal:
                execution.mark_finished(
                    status,
                    output=result.output if result else None,
                    node_states=result.node_states_dict() if result else {},
                    error=result.error if result else None,
                )
                await session.commit()
            elif execution.status != status:
                execution.status = status
                await session.commit()
        self.broker.publish(status_event(execution_id, sequence, status, result))

    def subscribe(self, execution_id: str) -> AsyncIterator[ExecutionEvent]:
        if self.broker.knows(execution_id):
            return self.broker.subscribe(execution_id)
        return self._replay(execution_id)

    async def _replay(self, execution_id: str) -> AsyncIterator[ExecutionEvent]:
        async with self._session_maker() as session:
            events = await replay_events(session, execution_id)
        for event in events:
            yield event


async def replay_events(session: AsyncSession, execution_id: str) -> list[ExecutionEvent]:
    """Rebuild the event stream of an execution from its stored rows."""
    execution = await session.get(Execution, execution_id)
    if execution is None:
        return []

    result = await session.execute(
        select(ExecutionLog)
        .where(ExecutionLog.execution_id == execution_id)
        .order_by(ExecutionLog.sequence)
    )
    events: list[ExecutionEvent] = []
    for row in result.scalars().all():
        events.append(
            ExecutionEvent(
                type="log",
                execution_id=execution_id,
                sequence=row.sequence,
                timestamp=row.timestamp,
                node_id=row.node_id,
                data={"level": row.level.value, "message": row.message, "data": row.get_data()},
            )
        )

    data: dict[str, Any] = {"status": execution.status.value}
    if execution.status.is_terminal:
        data.update(
            {
                "output": execution.get_output_data(),
                "node_states": execution.get_node_states(),
                "error": execution.error,
                "duration_ms": execution.duration_ms,
            }
        )
    events.append(
        ExecutionEvent(
            type="status",
            execution_id=execution_id,
            sequence=events[-1].sequence + 1 if events else 0,
            timestamp=execution.finished_at or execution.started_at,
            data=data,
        )
    )
    return events
