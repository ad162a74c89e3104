"""Logic nodes - control how the flow is walked."""

from flowdash.nodes.logic.condition import ConditionNode
from flowdash.nodes.logic.delay import DelayNode
from flowdash.nodes.logic.loop import LoopNode
from flowdash.nodes.logic.stop import StopNode

__all__ = [
    "ConditionNode",
    "DelayNode",
    "LoopNode",
    "StopNode",
]
