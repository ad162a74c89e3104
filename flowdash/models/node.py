"""Node models.

Runtime models for flow nodes (not persisted on their own):
- node catalog metadata (NodeDefinition) used for discovery
- per-type configuration models, combined into the NodeConfig tagged union
- NodeStatus, the per-node state machine of one execution
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from flowdash.models.execution import LogLevel


class NodeType(str, Enum):
    """Kinds of nodes a flow may contain."""

    HTTP_REQUEST = "http_request"
    TRANSFORM = "transform"
    CONDITION = "condition"
    LOOP = "loop"
    TABLE_READ = "table_read"
    TABLE_WRITE = "table_write"
    SET_VARIABLE = "set_variable"
    LOG = "log"
    DELAY = "delay"
    STOP = "stop"


class NodeCategory(str, Enum):
    """Node category for organization and filtering."""

    ACTION = "action"  # Talks to the outside world (HTTP, tables)
    LOGIC = "logic"  # Controls the walk (condition, loop, delay, stop)
    DATA = "data"  # Shapes values (transform, variables, log)


class NodeStatus(str, Enum):
    """State of a node within one execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.ERROR, NodeStatus.SKIPPED)


class NodeFieldType(str, Enum):
    """Supported value types for node configuration fields."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    ARRAY = "array"
    ANY = "any"


@dataclass
class NodeField:
    """Definition of one configuration field of a node."""

    name: str
    display_name: str
    type: NodeFieldType
    description: str = ""
    required: bool = True
    default: Any = None
    options: list[str] | None = None  # For enum-like fields


@dataclass
class NodeDefinition:
    """Complete node definition with metadata and schema.

    This is a runtime model used for the node catalog.
    Not persisted to database - loaded from node implementations.
    """

    type: NodeType
    display_name: str
    description: str
    category: NodeCategory
    fields: list[NodeField] = field(default_factory=list)
    uses_connector: bool = False
    version: str = "1.0.0"
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "type": self.type.value,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category.value,
            "fields": [
                {
                    "name": f.name,
                    "display_name": f.display_name,
                    "type": f.type.value,
                    "description": f.description,
                    "required": f.required,
                    "default": f.default,
                    "options": f.options,
                }
                for f in self.fields
            ],
            "uses_connector": self.uses_connector,
            "version": self.version,
            "tags": self.tags,
        }


class NodeConfigBase(BaseModel):
    """Common base of all node configuration models.

    Unknown keys (UI labels, positions) are ignored.
    """

    model_config = ConfigDict(extra="ignore")


HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class HttpRequestConfig(NodeConfigBase):
    type: Literal["http_request"] = "http_request"
    connector_id: str | None = None
    url: str | None = None
    endpoint: str = ""
    method: HttpMethod = "GET"
    headers: dict[str, Any] = Field(default_factory=dict)
    query_params: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    parse_json: bool | None = None
    fail_on_error: bool = True
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def require_target(self) -> "HttpRequestConfig":
        if not self.connector_id and not self.url:
            raise ValueError("Either connector_id or url is required")
        return self


class TransformConfig(NodeConfigBase):
    type: Literal["transform"] = "transform"
    expression: str = Field(min_length=1)


class ComparisonOperator(str, Enum):
    """Operators of a structured condition."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class Comparison(BaseModel):
    left: Any = None
    operator: ComparisonOperator
    right: Any = None


class ConditionConfig(NodeConfigBase):
    type: Literal["condition"] = "condition"
    expression: Any = None
    comparison: Comparison | None = None

    @model_validator(mode="after")
    def one_mode(self) -> "ConditionConfig":
        if (self.expression is None) == (self.comparison is None):
            raise ValueError("Exactly one of expression or comparison is required")
        return self


class LoopConfig(NodeConfigBase):
    type: Literal["loop"] = "loop"
    items: Any = None
    max_iterations: int | None = Field(default=None, ge=1)


class TableReadConfig(NodeConfigBase):
    type: Literal["table_read"] = "table_read"
    table_id: str = Field(min_length=1)
    filter: dict[str, Any] = Field(default_factory=dict)
    limit: int = Field(default=100, ge=1, le=10000)


class TableWriteConfig(NodeConfigBase):
    type: Literal["table_write"] = "table_write"
    table_id: str = Field(min_length=1)
    data: dict[str, Any]


class SetVariableConfig(NodeConfigBase):
    type: Literal["set_variable"] = "set_variable"
    name: str = Field(min_length=1, max_length=100)
    value: Any = None


class LogConfig(NodeConfigBase):
    type: Literal["log"] = "log"
    message: Any = ""
    level: LogLevel = LogLevel.INFO

    @field_validator("level", mode="before")
    @classmethod
    def accept_warn(cls, v: Any) -> Any:
        # The flow builder stores "warn"
        return "warning" if v == "warn" else v


class DelayConfig(NodeConfigBase):
    type: Literal["delay"] = "delay"
    amount: float = Field(ge=0)
    unit: Literal["seconds", "minutes", "hours"] = "seconds"

    @property
    def seconds(self) -> float:
        factor = {"seconds": 1, "minutes": 60, "hours": 3600}[self.unit]
        return self.amount * factor


class StopConfig(NodeConfigBase):
    type: Literal["stop"] = "stop"
    stop_type: Literal["success", "error"] = "success"
    message: str | None = None


NodeConfig = Annotated[
    Union[
        HttpRequestConfig,
        TransformConfig,
        ConditionConfig,
        LoopConfig,
        TableReadConfig,
        TableWriteConfig,
        SetVariableConfig,
        LogConfig,
        DelayConfig,
        StopConfig,
    ],
    Field(discriminator="type"),
]

_node_config_adapter: TypeAdapter[NodeConfig] = TypeAdapter(NodeConfig)


def parse_node_config(node_type: NodeType | str, config: dict[str, Any]) -> NodeConfig:
    """Validate a (resolved) raw config dict into its typed variant.

    Raises:
        pydantic.ValidationError: If the config does not match the node type
    """
    type_value = node_type.value if isinstance(node_type, NodeType) else node_type
    return _node_config_adapter.validate_python({**config, "type": type_value})
