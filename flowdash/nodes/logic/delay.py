"""Delay node."""

import asyncio
from typing import Any

from flowdash.models.execution import LogLevel
from flowdash.models.node import (
    DelayConfig,
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
)
from flowdash.nodes.base import BaseNode, NodeContext


class DelayNode(BaseNode[DelayConfig]):
    """Pauses the execution. Output: {"delayed_seconds": s}"""

    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.DELAY,
            display_name="Delay",
            description="Wait before continuing",
            category=NodeCategory.LOGIC,
            fields=[
                NodeField(name="amount", display_name="Amount", type=NodeFieldType.NUMBER),
                NodeField(
                    name="unit",
                    display_name="Unit",
                    type=NodeFieldType.STRING,
                    required=False,
                    default="seconds",
                    options=["seconds", "minutes", "hours"],
                ),
            ],
            tags=["wait", "sleep"],
        )

    async def execute(self, config: DelayConfig, context: NodeContext) -> dict[str, Any]:
        seconds = config.seconds
        if seconds > context.delay_max_seconds:
            context.log(
                LogLevel.WARNING,
                f"Delay of {seconds}s capped to {context.delay_max_seconds}s",
            )
            seconds = context.delay_max_seconds
        await asyncio.sleep(seconds)
        return {"delayed_seconds": seconds}
