"""Transform node.

Evaluates a sandboxed expression against the execution scope.

Available names:
- input: flow input
- vars: values from set_variable nodes
- loop: {"item", "index"} inside a loop body
- nodes: map of node id to output
- <node id>: output of that node, for ids that are valid identifiers

Example:
    [{"id": u["id"], "name": upper(u["name"])} for u in fetch.result.users]
"""

from typing import Any

from flowdash.core.errors import ErrorKind
from flowdash.core.expressions import evaluate
from flowdash.models.node import (
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
    TransformConfig,
)
from flowdash.nodes.base import BaseNode, NodeContext, NodeExecutionError


class TransformNode(BaseNode[TransformConfig]):
    """Output: {"result": <expression value>}"""

    error_kind = ErrorKind.SCRIPT

    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.TRANSFORM,
            display_name="Transform",
            description="Compute a value from previous outputs",
            category=NodeCategory.DATA,
            fields=[
                NodeField(
                    name="expression",
                    display_name="Expression",
                    type=NodeFieldType.STRING,
                    description="Python-like expression evaluated in a sandbox",
                ),
            ],
            tags=["script", "map", "json"],
        )

    async def execute(self, config: TransformConfig, context: NodeContext) -> Any:
        try:
            value = evaluate(config.expression, context.scope.names())
        except Exception as e:
            raise NodeExecutionError(
                message=f"Expression failed: {type(e).__name__}: {e}",
                kind=ErrorKind.SCRIPT,
                details={"expression": config.expression},
            ) from e
        return {"result": value}
