"""Node executors - one strategy per node type."""

from flowdash.nodes.base import BaseNode, NodeContext, NodeExecutionError
from flowdash.nodes.registry import NodeRegistry, get_node_registry

__all__ = [
    "BaseNode",
    "NodeContext",
    "NodeExecutionError",
    "NodeRegistry",
    "get_node_registry",
]
