"""Flow service.

Handles CRUD operations for flows.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowdash.core.errors import GraphError
from flowdash.core.graph import compile_graph
from flowdash.models.flow import Flow, FlowCreate, FlowGraph, FlowRead, FlowUpdate

logger = structlog.get_logger()


class FlowServiceError(Exception):
    """Error in flow service operations."""

    pass


class FlowNotFoundError(FlowServiceError):
    """Flow not found."""

    pass


class FlowAccessDeniedError(FlowServiceError):
    """User doesn't have access to flow."""

    pass


class FlowValidationError(FlowServiceError):
    """Flow graph validation failed."""

    def __init__(self, message: str, errors: list[str]) -> None:
        super().__init__(message)
        self.errors = errors


class FlowService:
    """Service for managing flows.

    Handles:
    - Creating flows from graph JSON
    - Reading and listing flows
    - Updating flow definitions (bumping the version on graph changes)
    - Deleting flows
    - User-scoped access control

    Example usage:
        service = FlowService(session)
        flow = await service.create(
            user_id="user-123",
            data=FlowCreate(name="Sync users", graph={"nodes": [...], "edges": [...]}),
        )
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, user_id: str, data: FlowCreate) -> FlowRead:
        """Create a new flow.

        Raises:
            FlowValidationError: If graph is invalid
        """
        self._validate_graph(data.graph)

        flow = Flow(
            user_id=user_id,
            name=data.name,
            description=data.description,
            graph=data.graph.model_dump_json(),
            active=data.active,
        )

        self._session.add(flow)
        await self._session.commit()
        await self._session.refresh(flow)

        logger.info(
            "flow_created",
            flow_id=flow.id,
            user_id=user_id,
            node_count=len(data.graph.nodes),
        )

        return self._to_read(flow)

    async def get(self, flow_id: str, user_id: str) -> FlowRead:
        """Get a flow.

        Raises:
            FlowNotFoundError: If flow doesn't exist
            FlowAccessDeniedError: If user doesn't own flow
        """
        flow = await self.get_entity(flow_id, user_id)
        return self._to_read(flow)

    async def list_all(
        self,
        user_id: str,
        active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FlowRead]:
        """List user's flows, most recently updated first."""
        query = (
            select(Flow)
            .where(Flow.user_id == user_id)
            .order_by(Flow.updated_at.desc())
            .limit(limit)
            .offset(offset)
        )

        if active is not None:
            query = query.where(Flow.active == active)

        result = await self._session.execute(query)
        return [self._to_read(f) for f in result.scalars().all()]

    async def update(self, flow_id: str, user_id: str, data: FlowUpdate) -> FlowRead:
        """Update a flow.

        Raises:
            FlowNotFoundError: If flow doesn't exist
            FlowAccessDeniedError: If user doesn't own flow
            FlowValidationError: If graph is invalid
        """
        flow = await self.get_entity(flow_id, user_id)

        if data.name is not None:
            flow.name = data.name

        if data.description is not None:
            flow.description = data.description

        if data.graph is not None:
            self._validate_graph(data.graph)
            flow.set_graph(data.graph)
            flow.version += 1

        if data.active is not None:
            flow.active = data.active

        await self._session.commit()
        await self._session.refresh(flow)

        logger.info(
            "flow_updated",
            flow_id=flow_id,
            user_id=user_id,
            version=flow.version,
        )

        return self._to_read(flow)

    async def delete(self, flow_id: str, user_id: str) -> None:
        """Delete a flow.

        Raises:
            FlowNotFoundError: If flow doesn't exist
            FlowAccessDeniedError: If user doesn't own flow
        """
        flow = await self.get_entity(flow_id, user_id)

        await self._session.delete(flow)
        await self._session.commit()

        logger.info("flow_deleted", flow_id=flow_id, user_id=user_id)

    async def get_entity(self, flow_id: str, user_id: str) -> Flow:
        """Get flow and verify ownership.

        Raises:
            FlowNotFoundError: If not found
            FlowAccessDeniedError: If wrong owner
        """
        result = await self._session.execute(select(Flow).where(Flow.id == flow_id))
        flow = result.scalar_one_or_none()

        if flow is None:
            raise FlowNotFoundError(f"Flow '{flow_id}' not found")

        if flow.user_id != user_id:
            logger.warning(
                "flow_access_denied",
                flow_id=flow_id,
                requested_by=user_id,
                owner=flow.user_id,
            )
            raise FlowAccessDeniedError("Access denied to flow")

        return flow

    def _validate_graph(self, graph: FlowGraph) -> None:
        try:
            compile_graph(graph)
        except GraphError as e:
            raise FlowValidationError("Invalid flow graph", errors=[e.message]) from e

    def _to_read(self, flow: Flow) -> FlowRead:
        """Convert flow entity to read schema."""
        return FlowRead(
            id=flow.id,
            user_id=flow.user_id,
            name=flow.name,
            description=flow.description,
            graph=flow.get_graph(),
            active=flow.active,
            version=flow.version,
            created_at=flow.created_at,
            updated_at=flow.updated_at,
        )
