"""Flow API endpoints.

Handles flow CRUD operations and starting executions.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from flowdash.api.deps import CurrentUser, ExecutionServiceDep, FlowServiceDep
from flowdash.models.execution import ExecutionStarted
from flowdash.models.flow import FlowCreate, FlowExecuteRequest, FlowRead, FlowUpdate
from flowdash.services.execution_service import ExecutionGraphError
from flowdash.services.flow_service import (
    FlowAccessDeniedError,
    FlowNotFoundError,
    FlowValidationError,
)

logger = structlog.get_logger()

router = APIRouter()


def _not_found_or_denied(e: Exception) -> HTTPException:
    if isinstance(e, FlowAccessDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("", response_model=list[FlowRead])
async def list_flows(
    user: CurrentUser,
    service: FlowServiceDep,
    active: Annotated[bool | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[FlowRead]:
    """List user's flows."""
    return await service.list_all(user_id=user.id, active=active, limit=limit, offset=offset)


@router.post("", response_model=FlowRead, status_code=status.HTTP_201_CREATED)
async def create_flow(
    user: CurrentUser,
    service: FlowServiceDep,
    data: FlowCreate,
) -> FlowRead:
    """Create a new flow.

    The graph is validated (unique node ids, known edge endpoints,
    no cycles outside loop bodies) before it is stored.
    """
    try:
        return await service.create(user_id=user.id, data=data)
    except FlowValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        ) from e


@router.get("/{flow_id}", response_model=FlowRead)
async def get_flow(
    flow_id: str,
    user: CurrentUser,
    service: FlowServiceDep,
) -> FlowRead:
    """Get a flow by ID."""
    try:
        return await service.get(flow_id=flow_id, user_id=user.id)
    except (FlowNotFoundError, FlowAccessDeniedError) as e:
        raise _not_found_or_denied(e) from e


@router.put("/{flow_id}", response_model=FlowRead)
async def update_flow(
    flow_id: str,
    user: CurrentUser,
    service: FlowServiceDep,
    data: FlowUpdate,
) -> FlowRead:
    """Update a flow. Changing the graph bumps the version."""
    try:
        return await service.update(flow_id=flow_id, user_id=user.id, data=data)
    except (FlowNotFoundError, FlowAccessDeniedError) as e:
        raise _not_found_or_denied(e) from e
    except FlowValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        ) from e


@router.delete("/{flow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_flow(
    flow_id: str,
    user: CurrentUser,
    service: FlowServiceDep,
) -> None:
    """Delete a flow."""
    try:
        await service.delete(flow_id=flow_id, user_id=user.id)
    except (FlowNotFoundError, FlowAccessDeniedError) as e:
        raise _not_found_or_denied(e) from e


@router.post(
    "/{flow_id}/execute",
    response_model=ExecutionStarted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def execute_flow(
    flow_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
    data: FlowExecuteRequest | None = None,
) -> ExecutionStarted:
    """Start an execution of a flow.

    The run continues in the background. Follow it with
    `GET /executions/{id}/stream` or poll `GET /executions/{id}`.
    """
    input_data = data.input if data is not None else None
    try:
        execution = await service.start(user_id=user.id, flow_id=flow_id, input_data=input_data)
    except (FlowNotFoundError, FlowAccessDeniedError) as e:
        raise _not_found_or_denied(e) from e
    except ExecutionGraphError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "details": e.details},
        ) from e

    return ExecutionStarted(execution_id=execution.id, status=execution.status)
