"""Set variable node.

Stores a value under `vars.<name>` for later templates and expressions.
"""

from typing import Any

from flowdash.models.node import (
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
    SetVariableConfig,
)
from flowdash.nodes.base import BaseNode, NodeContext


class SetVariableNode(BaseNode[SetVariableConfig]):
    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.SET_VARIABLE,
            display_name="Set Variable",
            description="Store a value for later nodes",
            category=NodeCategory.DATA,
            fields=[
                NodeField(name="name", display_name="Name", type=NodeFieldType.STRING),
                NodeField(name="value", display_name="Value", type=NodeFieldType.ANY),
            ],
            tags=["variable"],
        )

    async def execute(self, config: SetVariableConfig, context: NodeContext) -> dict[str, Any]:
        context.variables[config.name] = config.value
        return {"name": config.name, "result": config.value}
