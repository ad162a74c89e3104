"""Node registry.

Central registry mapping node types to their executors.
"""

from typing import Type

import structlog

from flowdash.models.node import NodeCategory, NodeDefinition, NodeType
from flowdash.nodes.base import BaseNode

logger = structlog.get_logger()


class NodeRegistryError(Exception):
    """Error in node registry operations."""

    pass


class NodeRegistry:
    """Central registry for node executors.

    Manages node registration, discovery, and instantiation.

    Example usage:
        registry = NodeRegistry()
        registry.register(HttpRequestNode)

        node = registry.create_instance(NodeType.HTTP_REQUEST)
        output = await node.run({"url": "https://example.com"}, context)
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._nodes: dict[NodeType, Type[BaseNode]] = {}
        self._definitions: dict[NodeType, NodeDefinition] = {}

    def register(self, node_class: Type[BaseNode]) -> None:
        """Register a node class.

        Raises:
            NodeRegistryError: If a node of the same type exists
        """
        definition = node_class().get_definition()

        if definition.type in self._nodes:
            raise NodeRegistryError(f"Node type '{definition.type.value}' already registered")

        self._nodes[definition.type] = node_class
        self._definitions[definition.type] = definition

        logger.debug(
            "node_registered",
            node_type=definition.type.value,
            category=definition.category.value,
        )

    def unregister(self, node_type: NodeType) -> None:
        """Remove a node type from the registry."""
        self._nodes.pop(node_type, None)
        self._definitions.pop(node_type, None)

    def has(self, node_type: NodeType | str) -> bool:
        try:
            return NodeType(node_type) in self._nodes
        except ValueError:
            return False

    def get_definition(self, node_type: NodeType | str) -> NodeDefinition | None:
        """Get node definition by type, or None if unknown."""
        try:
            return self._definitions.get(NodeType(node_type))
        except ValueError:
            return None

    def list_all(self) -> list[NodeDefinition]:
        """List all registered node definitions."""
        return list(self._definitions.values())

    def list_by_category(self, category: NodeCategory) -> list[NodeDefinition]:
        """List node definitions of one category."""
        return [d for d in self._definitions.values() if d.category == category]

    def create_instance(self, node_type: NodeType | str) -> BaseNode:
        """Create a new executor for a node type.

        Raises:
            NodeRegistryError: If the type is not registered
        """
        try:
            node_class = self._nodes[NodeType(node_type)]
        except (KeyError, ValueError):
            raise NodeRegistryError(f"Unknown node type: {node_type}") from None
        return node_class()

    def load_builtin_nodes(self) -> int:
        """Load all built-in nodes.

        Returns:
            Number of nodes loaded
        """
        from flowdash.nodes.actions.http_request import HttpRequestNode
        from flowdash.nodes.actions.table import TableReadNode, TableWriteNode
        from flowdash.nodes.data.log import LogNode
        from flowdash.nodes.data.set_variable import SetVariableNode
        from flowdash.nodes.data.transform import TransformNode
        from flowdash.nodes.logic.condition import ConditionNode
        from flowdash.nodes.logic.delay import DelayNode
        from flowdash.nodes.logic.loop import LoopNode
        from flowdash.nodes.logic.stop import StopNode

        builtin_nodes = [
            # Actions
            HttpRequestNode,
            TableReadNode,
            TableWriteNode,
            # Logic
            ConditionNode,
            LoopNode,
            DelayNode,
            StopNode,
            # Data
            TransformNode,
            SetVariableNode,
            LogNode,
        ]

        count = 0
        for node_class in builtin_nodes:
            try:
                self.register(node_class)
                count += 1
            except NodeRegistryError as e:
                logger.warning(
                    "builtin_node_registration_failed",
                    error=str(e),
                )

        logger.info("builtin_nodes_loaded", count=count)
        return count


# Singleton instance
_registry: NodeRegistry | None = None


def get_node_registry() -> NodeRegistry:
    """Get or create the singleton node registry.

    Returns:
        NodeRegistry instance with builtin nodes loaded
    """
    global _registry
    if _registry is None:
        _registry = NodeRegistry()
        _registry.load_builtin_nodes()
    return _registry
