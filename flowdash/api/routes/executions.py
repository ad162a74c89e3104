"""Execution API endpoints.

Handles execution inspection, SSE streaming and node control signals.
"""

import json
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from sse_starlette.sse import EventSourceResponse

from flowdash.api.deps import CurrentUser, ExecutionServiceDep
from flowdash.models.execution import ExecutionLogRead, ExecutionRead, ExecutionStatus
from flowdash.services.execution_service import (
    ExecutionAccessDeniedError,
    ExecutionNotFoundError,
    ExecutionServiceError,
)

logger = structlog.get_logger()

router = APIRouter()


def _lookup_error(e: Exception) -> HTTPException:
    if isinstance(e, ExecutionAccessDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("", response_model=list[ExecutionRead])
async def list_executions(
    user: CurrentUser,
    service: ExecutionServiceDep,
    flow_id: Annotated[str | None, Query()] = None,
    status_filter: Annotated[ExecutionStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[ExecutionRead]:
    """List user's executions, newest first."""
    return await service.list_all(
        user_id=user.id,
        flow_id=flow_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )


@router.get("/{execution_id}", response_model=ExecutionRead)
async def get_execution(
    execution_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> ExecutionRead:
    """Get an execution by ID."""
    try:
        return await service.get(execution_id=execution_id, user_id=user.id)
    except (ExecutionNotFoundError, ExecutionAccessDeniedError) as e:
        raise _lookup_error(e) from e


@router.get("/{execution_id}/logs", response_model=list[ExecutionLogRead])
async def get_execution_logs(
    execution_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
    after: Annotated[int | None, Query(ge=-1)] = None,
) -> list[ExecutionLogRead]:
    """Get stored log lines in insertion order.

    Pass `after` (a sequence number) to fetch only newer lines.
    """
    try:
        return await service.logs(execution_id, user.id, after_sequence=after)
    except (ExecutionNotFoundError, ExecutionAccessDeniedError) as e:
        raise _lookup_error(e) from e


@router.get("/{execution_id}/stream")
async def stream_execution(
    execution_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> EventSourceResponse:
    """Stream execution events via SSE.

    Event types:
    - log: one execution log line (level, message, data, node_id)
    - status: status transition; the terminal one carries output,
      node_states, error and duration_ms and ends the stream

    History is replayed first, so late subscribers see every event.
    """
    try:
        events = await service.stream(execution_id, user.id)
    except (ExecutionNotFoundError, ExecutionAccessDeniedError) as e:
        raise _lookup_error(e) from e

    async def event_generator():
        """Generate SSE events from execution."""
        try:
            async for event in events:
                yield {
                    "event": event.type,
                    "id": str(event.sequence),
                    "data": json.dumps(event.to_dict(), default=str),
                }
        except Exception as e:
            logger.exception(
                "stream_error",
                execution_id=execution_id,
                error=str(e),
            )
            yield {
                "event": "error",
                "data": json.dumps({"type": "error", "data": {"error": str(e)}}),
            }

    return EventSourceResponse(event_generator())


@router.post("/{execution_id}/nodes/{node_id}/skip", response_model=dict[str, Any])
async def skip_node(
    execution_id: str,
    node_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> dict[str, Any]:
    """Skip a node that has not started yet.

    Its outgoing edges become inactive, so nodes that depend only on
    it are skipped too.
    """
    try:
        return await service.skip_node(execution_id, user.id, node_id)
    except (ExecutionNotFoundError, ExecutionAccessDeniedError) as e:
        raise _lookup_error(e) from e
    except ExecutionServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e


@router.post("/{execution_id}/nodes/{node_id}/delete", response_model=dict[str, Any])
async def delete_node(
    execution_id: str,
    node_id: str,
    user: CurrentUser,
    service: ExecutionServiceDep,
) -> dict[str, Any]:
    """Remove a node that has not started yet, along with its edges."""
    try:
        return await service.delete_node(execution_id, user.id, node_id)
    except (ExecutionNotFoundError, ExecutionAccessDeniedError) as e:
        raise _lookup_error(e) from e
    except ExecutionServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
