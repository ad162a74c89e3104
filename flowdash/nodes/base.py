"""Base node interface.

Defines the abstract base class for all flow node executors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx
import structlog
from pydantic import ValidationError

from flowdash.core.errors import AuthError, ErrorKind
from flowdash.core.interpolation import ExecutionScope
from flowdash.core.sink import LogEntry
from flowdash.models.execution import LogLevel
from flowdash.models.node import NodeCategory, NodeDefinition, NodeType, parse_node_config

if TYPE_CHECKING:
    from flowdash.core.connector_auth import ConnectorAuthResolver
    from flowdash.core.ports import ConnectorResolver, TableStore

logger = structlog.get_logger()

ConfigT = TypeVar("ConfigT")


class NodeExecutionError(Exception):
    """Error during node execution.

    Caught by the scheduler and turned into an `error` node state and an
    error-level log line; never escapes a flow execution.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        http_status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.http_status = http_status
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.http_status is not None:
            data["http_status"] = self.http_status
        if self.details:
            data["details"] = self.details
        return data


class NodeValidationError(Exception):
    """Resolved node config does not match its schema."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


@dataclass
class NodeContext:
    """Context passed to a node during execution.

    Carries the execution scope, the collaborators a node may call and the
    node's log buffer. Logs are flushed to the execution sink in order by
    the scheduler once the node finishes.
    """

    execution_id: str
    node_id: str
    scope: ExecutionScope = field(default_factory=ExecutionScope)
    user_id: str | None = None
    connectors: "ConnectorResolver | None" = None
    tables: "TableStore | None" = None
    auth: "ConnectorAuthResolver | None" = None
    http: httpx.AsyncClient | None = None
    http_timeout: float = 30.0
    delay_max_seconds: float = 300.0
    logs: list[LogEntry] = field(default_factory=list)

    @property
    def variables(self) -> dict[str, Any]:
        return self.scope.variables

    def log(self, level: LogLevel, message: str, data: dict[str, Any] | None = None) -> None:
        self.logs.append(LogEntry(level=level, message=message, node_id=self.node_id, data=data))


class BaseNode(ABC, Generic[ConfigT]):
    """Abstract base class for node executors.

    All nodes must implement:
    - get_definition(): Returns node metadata for the catalog
    - execute(): Performs the node's operation on its typed config

    `error_kind` is the kind reported when execute() fails with an
    unexpected exception.

    Example implementation:
        class LogNode(BaseNode[LogConfig]):
            def get_definition(self) -> NodeDefinition:
                return NodeDefinition(type=NodeType.LOG, ...)

            async def execute(self, config: LogConfig, context: NodeContext) -> dict:
                context.log(config.level, str(config.message))
                return {"message": config.message}
    """

    error_kind: ErrorKind = ErrorKind.SCRIPT

    @abstractmethod
    def get_definition(self) -> NodeDefinition:
        """Get the node definition with metadata."""
        pass

    @abstractmethod
    async def execute(self, config: ConfigT, context: NodeContext) -> Any:
        """Execute the node's operation.

        Raises:
            NodeExecutionError: If execution fails
        """
        pass

    def validate_input(self, config: dict[str, Any]) -> ConfigT:
        """Validate the interpolated config into its typed model.

        Raises:
            NodeValidationError: If validation fails
        """
        try:
            return parse_node_config(self.node_type, config)  # type: ignore[return-value]
        except ValidationError as e:
            errors = e.errors(include_url=False, include_context=False, include_input=False)
            fields = ", ".join(
                ".".join(str(part) for part in err["loc"][1:]) or err["msg"] for err in errors
            )
            raise NodeValidationError(f"Invalid {self.node_type.value} config: {fields}", errors) from e

    def validate_output(self, output: Any) -> dict[str, Any]:
        """Wrap non-dict outputs as {"result": output}."""
        if isinstance(output, dict):
            return output
        return {"result": output}

    async def run(self, config: dict[str, Any], context: NodeContext) -> dict[str, Any]:
        """Run the node with full lifecycle.

        1. Config validation
        2. Execution
        3. Output normalization

        Raises:
            NodeExecutionError: For every failure, with its kind set
        """
        logger.debug(
            "node_execution_starting",
            node_type=self.node_type.value,
            node_id=context.node_id,
            execution_id=context.execution_id,
        )

        try:
            validated = self.validate_input(config)
            output = await self.execute(validated, context)
            result = self.validate_output(output)
        except NodeExecutionError:
            raise
        except NodeValidationError as e:
            raise NodeExecutionError(
                message=str(e),
                kind=ErrorKind.VALIDATION,
                details={"errors": e.errors},
            ) from e
        except AuthError as e:
            raise NodeExecutionError(
                message=e.message,
                kind=ErrorKind.AUTH,
                http_status=e.http_status,
                details=e.details,
            ) from e
        except Exception as e:
            logger.exception(
                "node_execution_failed",
                node_type=self.node_type.value,
                node_id=context.node_id,
                execution_id=context.execution_id,
            )
            raise NodeExecutionError(
                message=f"{type(e).__name__}: {e}",
                kind=self.error_kind,
            ) from e

        logger.debug(
            "node_execution_completed",
            node_type=self.node_type.value,
            node_id=context.node_id,
            execution_id=context.execution_id,
        )
        return result

    @property
    def node_type(self) -> NodeType:
        return self.get_definition().type

    @property
    def category(self) -> NodeCategory:
        return self.get_definition().category
