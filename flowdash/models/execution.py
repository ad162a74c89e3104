"""Execution entity models.

Defines the Execution table (one run of a flow) and the append-only
ExecutionLog table. Input/output and structured log data are stored as
JSON strings.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlmodel import Column, Field, SQLModel, Text


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class LogLevel(str, Enum):
    """Severity of an execution log entry."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Execution(SQLModel, table=True):
    """Execution database entity.

    Created when a run starts, updated as nodes complete and finalized
    once no runnable nodes remain.
    """

    __tablename__ = "execution"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique execution identifier (UUID)",
    )
    flow_id: str = Field(
        foreign_key="flow.id",
        index=True,
        description="Executed flow ID",
    )
    user_id: str = Field(
        foreign_key="user.id",
        index=True,
        description="User who triggered the execution",
    )
    status: ExecutionStatus = Field(
        default=ExecutionStatus.RUNNING,
        index=True,
        description="Current execution status",
    )
    input_data: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="JSON input passed to the flow",
    )
    output_data: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="JSON output of the flow's sink nodes",
    )
    node_states: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="JSON map of node id to final node status",
    )
    error: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Summary of the first node error, if any",
    )
    started_at: datetime = Field(
        default_factory=utc_now,
        description="Execution start timestamp (UTC)",
    )
    finished_at: datetime | None = Field(
        default=None,
        description="Execution completion timestamp (UTC)",
    )
    duration_ms: int | None = Field(
        default=None,
        ge=0,
        description="Wall-clock duration in milliseconds",
    )

    def get_input_data(self) -> Any:
        """Parse and return input data."""
        if self.input_data is None:
            return None
        return json.loads(self.input_data)

    def set_input_data(self, data: Any) -> None:
        """Set input data from any JSON-serializable value."""
        self.input_data = json.dumps(data, default=str)

    def get_output_data(self) -> Any:
        """Parse and return output data."""
        if self.output_data is None:
            return None
        return json.loads(self.output_data)

    def get_node_states(self) -> dict[str, str]:
        if self.node_states is None:
            return {}
        return json.loads(self.node_states)

    def mark_finished(
        self,
        status: ExecutionStatus,
        output: Any,
        node_states: dict[str, str],
        error: str | None = None,
    ) -> None:
        """Record the terminal state of the run."""
        self.status = status
        self.output_data = json.dumps(output, default=str)
        self.node_states = json.dumps(node_states)
        self.error = error
        self.finished_at = utc_now()
        started = self.started_at
        if started.tzinfo is None:
            # SQLite drops tzinfo on the way back
            started = started.replace(tzinfo=timezone.utc)
        self.duration_ms = max(0, int((self.finished_at - started).total_seconds() * 1000))


class ExecutionLog(SQLModel, table=True):
    """Append-only log line of an execution.

    Ordered per execution by `sequence`; never updated after insert.
    """

    __tablename__ = "execution_log"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    execution_id: str = Field(
        foreign_key="execution.id",
        index=True,
    )
    sequence: int = Field(ge=0, description="Per-execution insertion order")
    node_id: str | None = Field(default=None, max_length=100)
    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel = Field(default=LogLevel.INFO)
    message: str = Field(sa_column=Column(Text, nullable=False))
    data: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="JSON structured payload (request/response snapshots)",
    )

    def get_data(self) -> Any:
        if self.data is None:
            return None
        return json.loads(self.data)


class ExecutionRead(SQLModel):
    """Schema for reading execution data."""

    id: str
    flow_id: str
    user_id: str
    status: ExecutionStatus
    input_data: Any = None
    output_data: Any = None
    node_states: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int | None = None


class ExecutionLogRead(SQLModel):
    """Schema for reading one log entry."""

    sequence: int
    node_id: str | None = None
    timestamp: datetime
    level: LogLevel
    message: str
    data: Any = None


class ExecutionStarted(SQLModel):
    """Response of the execute endpoint."""

    execution_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
