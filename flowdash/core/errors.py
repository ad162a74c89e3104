"""Error taxonomy shared by the execution engine and node executors."""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Kind of a node or execution failure, reported in logs and outputs."""

    HTTP = "HttpError"
    AUTH = "AuthError"
    SCRIPT = "ScriptError"
    CONDITION = "ConditionError"
    TYPE = "TypeError"
    GRAPH = "GraphError"
    VALIDATION = "ValidationError"
    TABLE = "TableError"
    STOP = "StopError"
    LOOP = "LoopError"


class ExecutionError(Exception):
    """Base exception for execution errors."""

    kind: ErrorKind = ErrorKind.GRAPH

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "details": self.details}


class GraphError(ExecutionError):
    """Malformed flow graph: dangling edge, cycle, bad branch or unknown node type.

    Raised before any node runs.
    """

    kind = ErrorKind.GRAPH


class AuthError(ExecutionError):
    """Token fetch or refresh failed, or required auth fields are missing."""

    kind = ErrorKind.AUTH

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message, details)
        self.http_status = http_status
        # Connector state to persist despite the failure (needs_reauth set)
        self.connector: Any = None
