"""Data models - SQLModel entities and runtime models."""

from flowdash.models.connector import (
    AuthType,
    BasicAuth,
    Connector,
    ConnectorConfig,
    ConnectorCreate,
    ConnectorRead,
    ConnectorTestRequest,
    ConnectorUpdate,
    ConnectorUseRequest,
    NoAuth,
    OAuth2Auth,
    OAuthRefreshRequest,
)
from flowdash.models.execution import (
    Execution,
    ExecutionLog,
    ExecutionLogRead,
    ExecutionRead,
    ExecutionStatus,
    LogLevel,
)
from flowdash.models.flow import Flow, FlowCreate, FlowEdge, FlowGraph, FlowNode, FlowRead, FlowUpdate
from flowdash.models.node import NodeCategory, NodeDefinition, NodeStatus, NodeType
from flowdash.models.table import TableRow
from flowdash.models.user import User, UserCreate, UserRead

__all__ = [
    "AuthType",
    "BasicAuth",
    "Connector",
    "ConnectorConfig",
    "ConnectorCreate",
    "ConnectorRead",
    "ConnectorTestRequest",
    "ConnectorUpdate",
    "ConnectorUseRequest",
    "Execution",
    "ExecutionLog",
    "ExecutionLogRead",
    "ExecutionRead",
    "ExecutionStatus",
    "Flow",
    "FlowCreate",
    "FlowEdge",
    "FlowGraph",
    "FlowNode",
    "FlowRead",
    "FlowUpdate",
    "LogLevel",
    "NodeCategory",
    "NodeDefinition",
    "NodeStatus",
    "NodeType",
    "NoAuth",
    "OAuth2Auth",
    "OAuthRefreshRequest",
    "TableRow",
    "User",
    "UserCreate",
    "UserRead",
]
