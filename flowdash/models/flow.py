"""Flow entity model.

Defines the Flow table for storing flow definitions.
Flows are stored as JSON graphs with nodes and edges.
"""

import json
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import field_validator
from sqlmodel import Column, Field, SQLModel, Text

from flowdash.models.node import NodeType


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


EdgeBranch = Literal["true", "false", "body"]


class FlowNode(SQLModel):
    """Schema for a node in the flow graph."""

    id: str = Field(min_length=1, max_length=100)
    type: NodeType
    config: dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = False
    position: dict[str, float] = Field(default_factory=lambda: {"x": 0, "y": 0})


class FlowEdge(SQLModel):
    """Schema for an edge in the flow graph.

    `branch` selects the outgoing side of a condition ("true"/"false") or
    marks the entry into a loop body ("body").
    """

    source: str
    target: str
    branch: EdgeBranch | None = None

    @field_validator("branch", mode="before")
    @classmethod
    def normalize_branch(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return "true" if v else "false"
        return v


class FlowGraph(SQLModel):
    """Schema for the complete flow graph."""

    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)


class FlowBase(SQLModel):
    """Base flow fields shared across models."""

    name: str = Field(
        max_length=255,
        min_length=1,
        description="Flow name",
    )
    description: str | None = Field(
        default=None,
        max_length=2000,
        description="Flow description",
    )


class Flow(FlowBase, table=True):
    """Flow database entity.

    Graph schema:
    {
        "nodes": [{"id": str, "type": str, "config": dict, "continue_on_error": bool}],
        "edges": [{"source": str, "target": str, "branch": "true" | "false" | "body" | null}]
    }
    """

    __tablename__ = "flow"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique flow identifier (UUID)",
    )
    user_id: str = Field(
        foreign_key="user.id",
        index=True,
        description="Owner user ID",
    )
    graph: str = Field(
        sa_column=Column(Text, nullable=False),
        description="JSON flow graph definition",
    )
    active: bool = Field(default=True, description="Whether the flow may be executed")
    version: int = Field(
        default=1,
        ge=1,
        description="Incremented on every graph change",
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        description="Creation timestamp (UTC)",
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)",
    )

    def get_graph(self) -> FlowGraph:
        """Parse and return the flow graph."""
        return FlowGraph.model_validate(json.loads(self.graph))

    def set_graph(self, graph: FlowGraph) -> None:
        """Set the flow graph."""
        self.graph = graph.model_dump_json()


class FlowCreate(FlowBase):
    """Schema for creating a new flow."""

    graph: FlowGraph = Field(default_factory=FlowGraph)
    active: bool = True


class FlowUpdate(SQLModel):
    """Schema for updating a flow."""

    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    graph: FlowGraph | None = None
    active: bool | None = None


class FlowRead(FlowBase):
    """Schema for reading flow data."""

    id: str
    user_id: str
    graph: FlowGraph
    active: bool
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator("graph", mode="before")
    @classmethod
    def parse_graph(cls, v: Any) -> FlowGraph:
        """Parse graph from JSON string or dict."""
        if isinstance(v, str):
            return FlowGraph.model_validate(json.loads(v))
        if isinstance(v, dict):
            return FlowGraph.model_validate(v)
        return v


class FlowExecuteRequest(SQLModel):
    """Body of the execute endpoint."""

    input: Any = None
