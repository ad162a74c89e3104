"""Stop node.

Ends the execution: every node that has not started yet is skipped. With
stop_type "error" the stop node itself fails with its message.
"""

from typing import Any

from flowdash.core.errors import ErrorKind
from flowdash.models.node import (
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
    StopConfig,
)
from flowdash.nodes.base import BaseNode, NodeContext, NodeExecutionError


class StopNode(BaseNode[StopConfig]):
    error_kind = ErrorKind.STOP

    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.STOP,
            display_name="Stop Job",
            description="Stop the execution with success or error",
            category=NodeCategory.LOGIC,
            fields=[
                NodeField(
                    name="stop_type",
                    display_name="Stop Type",
                    type=NodeFieldType.STRING,
                    required=False,
                    default="success",
                    options=["success", "error"],
                ),
                NodeField(
                    name="message",
                    display_name="Message",
                    type=NodeFieldType.STRING,
                    required=False,
                ),
            ],
        )

    async def execute(self, config: StopConfig, context: NodeContext) -> dict[str, Any]:
        if config.stop_type == "error":
            raise NodeExecutionError(
                message=config.message or "Execution stopped with error",
                kind=ErrorKind.STOP,
            )
        return {"stop_type": config.stop_type, "message": config.message}
