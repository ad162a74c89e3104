"""Condition node.

Evaluates either a boolean expression or a structured comparison. The
scheduler follows only the outgoing edge whose branch matches the result.
"""

from typing import Any

from flowdash.core.errors import ErrorKind
from flowdash.core.expressions import evaluate
from flowdash.core.interpolation import TOKEN_PATTERN
from flowdash.models.node import (
    Comparison,
    ComparisonOperator,
    ConditionConfig,
    NodeCategory,
    NodeDefinition,
    NodeField,
    NodeFieldType,
    NodeType,
)
from flowdash.nodes.base import BaseNode, NodeContext, NodeExecutionError


def _is_unresolved(value: Any) -> bool:
    return isinstance(value, str) and TOKEN_PATTERN.fullmatch(value) is not None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, tuple, dict)) and len(value) == 0)


def _as_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value) if any(c in value for c in ".eE") else int(value)
        except ValueError:
            return value
    return value


def _loose_equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    # "5" from text interpolation should equal 5
    if isinstance(left, (int, float)) != isinstance(right, (int, float)):
        return _as_number(left) == _as_number(right)
    return False


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return str(item) in container
    if isinstance(container, (list, tuple, set, dict)):
        return item in container
    if container is None:
        return False
    raise TypeError(f"cannot search in {type(container).__name__}")


def compare(comparison: Comparison) -> bool:
    """Apply a comparison operator.

    Raises:
        TypeError: If the operands cannot be compared
    """
    left, right, op = comparison.left, comparison.right, comparison.operator

    if op == ComparisonOperator.EXISTS:
        return left is not None and not _is_unresolved(left)
    if op == ComparisonOperator.NOT_EXISTS:
        return left is None or _is_unresolved(left)
    if op == ComparisonOperator.IS_EMPTY:
        return _is_empty(left)
    if op == ComparisonOperator.IS_NOT_EMPTY:
        return not _is_empty(left)
    if op == ComparisonOperator.EQUALS:
        return _loose_equals(left, right)
    if op == ComparisonOperator.NOT_EQUALS:
        return not _loose_equals(left, right)
    if op == ComparisonOperator.CONTAINS:
        return _contains(left, right)
    if op == ComparisonOperator.NOT_CONTAINS:
        return not _contains(left, right)
    if op == ComparisonOperator.STARTS_WITH:
        return str(left).startswith(str(right))
    if op == ComparisonOperator.ENDS_WITH:
        return str(left).endswith(str(right))

    a, b = _as_number(left), _as_number(right)
    if op == ComparisonOperator.GREATER_THAN:
        return a > b
    if op == ComparisonOperator.LESS_THAN:
        return a < b
    if op == ComparisonOperator.GREATER_OR_EQUAL:
        return a >= b
    if op == ComparisonOperator.LESS_OR_EQUAL:
        return a <= b
    raise TypeError(f"unsupported operator {op}")


class ConditionNode(BaseNode[ConditionConfig]):
    """Branches the flow. Output: {"result": bool}"""

    error_kind = ErrorKind.CONDITION

    def get_definition(self) -> NodeDefinition:
        return NodeDefinition(
            type=NodeType.CONDITION,
            display_name="If / Else",
            description="Follow the true or false branch",
            category=NodeCategory.LOGIC,
            fields=[
                NodeField(
                    name="expression",
                    display_name="Expression",
                    type=NodeFieldType.STRING,
                    description="Boolean expression, e.g. fetch.result.count > 0",
                    required=False,
                ),
                NodeField(
                    name="comparison",
                    display_name="Comparison",
                    type=NodeFieldType.JSON,
                    description="{left, operator, right}",
                    required=False,
                    options=[op.value for op in ComparisonOperator],
                ),
            ],
            tags=["branch", "if"],
        )

    async def execute(self, config: ConditionConfig, context: NodeContext) -> dict[str, Any]:
        if config.comparison is not None:
            try:
                result = compare(config.comparison)
            except TypeError as e:
                raise NodeExecutionError(
                    message=f"Cannot compare values: {e}",
                    kind=ErrorKind.CONDITION,
                    details={"operator": config.comparison.operator.value},
                ) from e
            return {"result": bool(result)}

        expression = config.expression
        if isinstance(expression, bool):
            return {"result": expression}
        if not isinstance(expression, str):
            raise NodeExecutionError(
                message=f"Condition must be a boolean, got {type(expression).__name__}",
                kind=ErrorKind.CONDITION,
            )

        try:
            value = evaluate(expression, context.scope.names())
        except Exception as e:
            raise NodeExecutionError(
                message=f"Condition expression failed: {type(e).__name__}: {e}",
                kind=ErrorKind.CONDITION,
                details={"expression": expression},
            ) from e
        if not isinstance(value, bool):
            raise NodeExecutionError(
                message=f"Condition must evaluate to a boolean, got {type(value).__name__}",
                kind=ErrorKind.CONDITION,
                details={"expression": expression},
            )
        return {"result": value}
