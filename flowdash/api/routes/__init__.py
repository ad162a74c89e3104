"""API route handlers."""

from flowdash.api.routes.auth import router as auth_router
from flowdash.api.routes.connectors import router as connectors_router
from flowdash.api.routes.executions import router as executions_router
from flowdash.api.routes.flows import router as flows_router
from flowdash.api.routes.nodes import router as nodes_router

__all__ = [
    "auth_router",
    "connectors_router",
    "executions_router",
    "flows_router",
    "nodes_router",
]
