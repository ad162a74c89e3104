"""Loop node.

Validates the items to iterate over. The scheduler then runs the loop
body once per item with `loop.item` / `loop.index` bound.
"""

from typing import Any

from flowdash.core.errors import ErrorKind
from flowdash.models.node import (
    LoopConfig,
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
)
from flowdash.nodes.base import BaseNode, NodeContext, NodeExecutionError


class LoopNode(BaseNode[LoopConfig]):
    """Output: {"items": [...], "max_iterations": n | None}"""

    error_kind = ErrorKind.TYPE

    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.LOOP,
            display_name="Loop",
            description="Run the body once per item of an array",
            category=NodeCategory.LOGIC,
            fields=[
                NodeField(
                    name="items",
                    display_name="Items",
                    type=NodeFieldType.ARRAY,
                    description="Array to iterate, e.g. {{fetch.result.items}}",
                ),
                NodeField(
                    name="max_iterations",
                    display_name="Max Iterations",
                    type=NodeFieldType.NUMBER,
                    required=False,
                ),
            ],
            tags=["loop", "foreach", "iterate"],
        )

    async def execute(self, config: LoopConfig, context: NodeContext) -> dict[str, Any]:
        if not isinstance(config.items, (list, tuple)):
            raise NodeExecutionError(
                message=f"Loop items must be an array, got {type(config.items).__name__}",
                kind=ErrorKind.TYPE,
                details={"items": config.items if isinstance(config.items, str) else None},
            )
        return {"items": list(config.items), "max_iterations": config.max_iterations}
