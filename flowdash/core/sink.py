"""Execution log/status sink.

The engine appends log entries and status transitions to an ExecutionSink.
Subscribers receive the same events in insertion order: history first,
then live events, until the terminal status closes the stream.
"""

import asyncio
import json
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol

import structlog

from flowdash.models.execution import ExecutionStatus, LogLevel

if TYPE_CHECKING:
    from flowdash.core.execution_engine import ExecutionResult

logger = structlog.get_logger()


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


@dataclass
class LogEntry:
    """One log line emitted by the engine."""

    level: LogLevel
    message: str
    node_id: str | None = None
    data: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class ExecutionEvent:
    """Event delivered to subscribers of an execution."""

    type: str  # 'log' or 'status'
    execution_id: str
    sequence: int
    timestamp: datetime = field(default_factory=utc_now)
    data: dict[str, Any] = field(default_factory=dict)
    node_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type == "status" and self.data.get("status") in (
            ExecutionStatus.SUCCESS.value,
            ExecutionStatus.FAILED.value,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for SSE streaming."""
        return {
            "type": self.type,
            "execution_id": self.execution_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "node_id": self.node_id,
        }

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"


def log_event(execution_id: str, sequence: int, entry: LogEntry) -> ExecutionEvent:
    return ExecutionEvent(
        type="log",
        execution_id=execution_id,
        sequence=sequence,
        timestamp=entry.timestamp,
        node_id=entry.node_id,
        data={
            "level": entry.level.value,
            "message": entry.message,
            "data": entry.data,
        },
    )


def status_event(
    execution_id: str,
    sequence: int,
    status: ExecutionStatus,
    result: "ExecutionResult | None" = None,
) -> ExecutionEvent:
    data: dict[str, Any] = {"status": status.value}
    if result is not None:
        data.update(
            {
                "output": result.output,
                "node_states": result.node_states_dict(),
                "error": result.error,
                "duration_ms": result.duration_ms,
            }
        )
    return ExecutionEvent(
        type="status",
        execution_id=execution_id,
        sequence=sequence,
        data=data,
    )


class ExecutionSink(Protocol):
    async def append(self, execution_id: str, entry: LogEntry) -> None:
        ...

    async def set_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: "ExecutionResult | None" = None,
    ) -> None:
        ...

    def subscribe(self, execution_id: str) -> AsyncIterator[ExecutionEvent]:
        ...


@dataclass
class _Channel:
    history: list[ExecutionEvent] = field(default_factory=list)
    queues: set[asyncio.Queue[ExecutionEvent]] = field(default_factory=set)
    closed: bool = False
    next_sequence: int = 0


class ExecutionBroker:
    """In-process fan-out of execution events with history replay.

    Keeps the full history of running executions and of the most recent
    `max_finished` finished ones.
    """

    def __init__(self, max_finished: int = 200) -> None:
        self._channels: dict[str, _Channel] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        self.max_finished = max_finished

    def knows(self, execution_id: str) -> bool:
        return execution_id in self._channels

    def open(self, execution_id: str) -> None:
        """Register an execution so early subscribers wait for its events."""
        self._channels.setdefault(execution_id, _Channel())

    def next_sequence(self, execution_id: str) -> int:
        channel = self._channels.setdefault(execution_id, _Channel())
        sequence = channel.next_sequence
        channel.next_sequence += 1
        return sequence

    def publish(self, event: ExecutionEvent) -> None:
        """Deliver an event to every current subscriber before returning."""
        channel = self._channels.setdefault(event.execution_id, _Channel())
        if channel.closed:
            logger.warning(
                "event_after_close",
                execution_id=event.execution_id,
                event_type=event.type,
            )
            return
        channel.history.append(event)
        for queue in channel.queues:
            queue.put_nowait(event)
        if event.is_terminal:
            channel.closed = True
            self._retire(event.execution_id)

    def _retire(self, execution_id: str) -> None:
        self._finished[execution_id] = None
        while len(self._finished) > self.max_finished:
            old_id, _ = self._finished.popitem(last=False)
            channel = self._channels.get(old_id)
            if channel is not None and not channel.queues:
                del self._channels[old_id]

    async def subscribe(self, execution_id: str) -> AsyncIterator[ExecutionEvent]:
        channel = self._channels.setdefault(execution_id, _Channel())
        queue: asyncio.Queue[ExecutionEvent] = asyncio.Queue()
        history = list(channel.history)
        closed = channel.closed
        if not closed:
            channel.queues.add(queue)
        try:
            for event in history:
                yield event
            if closed:
                return
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            channel.queues.discard(queue)


class InMemoryExecutionSink:
    """ExecutionSink without persistence; used for tests and ad-hoc runs."""

    def __init__(self, broker: ExecutionBroker | None = None) -> None:
        self.broker = broker or ExecutionBroker()
        self.logs: dict[str, list[LogEntry]] = {}
        self.statuses: dict[str, list[ExecutionStatus]] = {}
        self.results: dict[str, "ExecutionResult"] = {}

    async def append(self, execution_id: str, entry: LogEntry) -> None:
        self.logs.setdefault(execution_id, []).append(entry)
        sequence = self.broker.next_sequence(execution_id)
        self.broker.publish(log_event(execution_id, sequence, entry))

    async def set_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        result: "ExecutionResult | None" = None,
    ) -> None:
        self.statuses.setdefault(execution_id, []).append(status)
        if result is not None:
            self.results[execution_id] = result
        sequence = self.broker.next_sequence(execution_id)
        self.broker.publish(status_event(execution_id, sequence, status, result))

    def subscribe(self, execution_id: str) -> AsyncIterator[ExecutionEvent]:
        return self.broker.subscribe(execution_id)
