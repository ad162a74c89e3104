"""Table nodes.

Read and write rows of the user's data tables through the TableStore
collaborator.
"""

from typing import Any

from flowdash.core.errors import ErrorKind
from flowdash.core.ports import TableStore, TableStoreError
from flowdash.models.execution import LogLevel
from flowdash.models.node import (
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
    TableReadConfig,
    TableWriteConfig,
)
from flowdash.nodes.base import BaseNode, NodeContext, NodeExecutionError


def _store(context: NodeContext) -> TableStore:
    if context.tables is None:
        raise NodeExecutionError(
            message="Table storage is not available in this execution",
            kind=ErrorKind.TABLE,
        )
    return context.tables


class TableReadNode(BaseNode[TableReadConfig]):
    """Reads rows matching an equality filter.

    Output: {"result": [row, ...], "count": n}
    """

    error_kind = ErrorKind.TABLE

    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.TABLE_READ,
            display_name="Read Table",
            description="Read rows from a data table",
            category=NodeCategory.ACTION,
            fields=[
                NodeField(name="table_id", display_name="Table", type=NodeFieldType.STRING),
                NodeField(
                    name="filter",
                    display_name="Filter",
                    type=NodeFieldType.JSON,
                    description="Column values rows must equal",
                    required=False,
                    default={},
                ),
                NodeField(
                    name="limit",
                    display_name="Limit",
                    type=NodeFieldType.NUMBER,
                    required=False,
                    default=100,
                ),
            ],
            tags=["table", "data"],
        )

    async def execute(self, config: TableReadConfig, context: NodeContext) -> dict[str, Any]:
        try:
            rows = await _store(context).read_rows(config.table_id, config.filter, config.limit)
        except TableStoreError as e:
            raise NodeExecutionError(
                message=str(e),
                kind=ErrorKind.TABLE,
                details={"table_id": config.table_id},
            ) from e
        context.log(LogLevel.INFO, f"Read {len(rows)} rows from table {config.table_id}")
        return {"result": rows, "count": len(rows)}


class TableWriteNode(BaseNode[TableWriteConfig]):
    """Appends one row. Output: {"result": <stored row>}"""

    error_kind = ErrorKind.TABLE

    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.TABLE_WRITE,
            display_name="Write Table",
            description="Append a row to a data table",
            category=NodeCategory.ACTION,
            fields=[
                NodeField(name="table_id", display_name="Table", type=NodeFieldType.STRING),
                NodeField(name="data", display_name="Row Data", type=NodeFieldType.JSON),
            ],
            tags=["table", "data"],
        )

    async def execute(self, config: TableWriteConfig, context: NodeContext) -> dict[str, Any]:
        try:
            row = await _store(context).write_row(config.table_id, config.data)
        except TableStoreError as e:
            raise NodeExecutionError(
                message=str(e),
                kind=ErrorKind.TABLE,
                details={"table_id": config.table_id},
            ) from e
        return {"result": row}
