"""Services layer - Business logic and orchestration."""

from flowdash.services.connector_service import ConnectorService
from flowdash.services.execution_service import ExecutionService
from flowdash.services.flow_service import FlowService

__all__ = [
    "ConnectorService",
    "ExecutionService",
    "FlowService",
]
