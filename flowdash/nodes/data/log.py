"""Log node."""

import json
from typing import Any

from flowdash.models.execution import LogLevel
from flowdash.models.node import (
    LogConfig,
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
)
from flowdash.nodes.base import BaseNode, NodeContext


class LogNode(BaseNode[LogConfig]):
    """Writes a message to the execution log."""

    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.LOG,
            display_name="Log",
            description="Write a message to the execution log",
            category=NodeCategory.DATA,
            fields=[
                NodeField(name="message", display_name="Message", type=NodeFieldType.ANY),
                NodeField(
                    name="level",
                    display_name="Level",
                    type=NodeFieldType.STRING,
                    required=False,
                    default="info",
                    options=[level.value for level in LogLevel],
                ),
            ],
        )

    async def execute(self, config: LogConfig, context: NodeContext) -> dict[str, Any]:
        message = config.message
        text = message if isinstance(message, str) else json.dumps(message, default=str)
        context.log(config.level, text)
        return {"message": message, "level": config.level.value}
