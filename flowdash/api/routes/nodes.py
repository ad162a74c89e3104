"""Node catalog API endpoints.

Provides the node types the flow builder can place.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, status

from flowdash.models.node import NodeCategory, NodeType
from flowdash.nodes.registry import get_node_registry

router = APIRouter()


@router.get("", response_model=dict[str, Any])
async def list_nodes() -> dict[str, Any]:
    """List all node types, grouped by category."""
    registry = get_node_registry()
    return {
        "categories": {
            category.value: [d.to_dict() for d in registry.list_by_category(category)]
            for category in NodeCategory
        },
        "total": len(registry.list_all()),
    }


@router.get("/{node_type}", response_model=dict[str, Any])
async def get_node(node_type: str) -> dict[str, Any]:
    """Get the definition of one node type."""
    try:
        definition = get_node_registry().get_definition(NodeType(node_type))
    except ValueError:
        definition = None

    if definition is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Node type '{node_type}' not found",
        )
    return definition.to_dict()
