"""Flow execution engine.

Walks a compiled flow graph in dependency order on a single cooperative
task. Each ready node has its config interpolated against the outputs of
earlier nodes, validated into its typed config and dispatched to its
executor. Logs and status transitions go to an ExecutionSink as they
happen.

Per-node state machine: pending -> running -> success | error, or
pending -> skipped. A node is ready once every incoming edge is decided:

- success activates outgoing edges (only the matching branch of a condition)
- error fails outgoing edges; successors with a failed edge are skipped
- error with continue_on_error keeps outgoing edges active
- skipped nodes deactivate their edges; a node runs only when at least
  one incoming edge is active
- deleted nodes drop their edges entirely
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

import httpx
import structlog

from flowdash.config import settings
from flowdash.core.connector_auth import ConnectorAuthResolver
from flowdash.core.errors import ErrorKind, GraphError
from flowdash.core.graph import CompiledGraph, compile_graph
from flowdash.core.http import truncate
from flowdash.core.interpolation import ExecutionScope, TemplateResolver
from flowdash.core.ports import ConnectorResolver, TableStore
from flowdash.core.sink import ExecutionSink, LogEntry
from flowdash.models.execution import ExecutionStatus, LogLevel
from flowdash.models.flow import FlowEdge, FlowGraph
from flowdash.models.node import NodeStatus, NodeType
from flowdash.nodes.base import NodeContext, NodeExecutionError
from flowdash.nodes.registry import NodeRegistry, get_node_registry

logger = structlog.get_logger()


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class EdgeState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"
    REMOVED = "removed"


class ExecutionControl:
    """Operator signals for one running execution.

    Signals are sticky: they are applied at the next scheduling tick to
    the target node if it has not started yet, and again to every later
    loop iteration that contains it.
    """

    def __init__(self) -> None:
        self.skip_ids: set[str] = set()
        self.delete_ids: set[str] = set()

    def skip(self, node_id: str) -> None:
        self.skip_ids.add(node_id)

    def delete(self, node_id: str) -> None:
        self.delete_ids.add(node_id)


@dataclass
class NodeRuntimeState:
    """Transient state of one node during a run."""

    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: dict[str, Any] | None = None


@dataclass
class ExecutionResult:
    """Final outcome of a flow execution."""

    execution_id: str
    status: ExecutionStatus
    output: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    node_states: dict[str, NodeRuntimeState] = field(default_factory=dict)
    error: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime = field(default_factory=utc_now)
    duration_ms: int = 0

    def node_states_dict(self) -> dict[str, str]:
        return {node_id: state.status.value for node_id, state in self.node_states.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "output": self.output,
            "node_states": self.node_states_dict(),
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


@dataclass
class _Run:
    execution_id: str
    user_id: str | None
    graph: CompiledGraph
    control: ExecutionControl
    deadline: float
    states: dict[str, NodeRuntimeState]
    halted: str | None = None  # "stop" or "timeout"
    failed: bool = False
    error: str | None = None


class FlowExecutionEngine:
    """Dependency-ordered flow interpreter.

    Example usage:
        engine = FlowExecutionEngine(sink, connectors=resolver, tables=store)
        result = await engine.execute(flow.get_graph(), {"user_id": 7})
        print(result.status, result.output)
    """

    def __init__(
        self,
        sink: ExecutionSink,
        connectors: ConnectorResolver | None = None,
        tables: TableStore | None = None,
        auth: ConnectorAuthResolver | None = None,
        http_client: httpx.AsyncClient | None = None,
        registry: NodeRegistry | None = None,
        execution_timeout: float | None = None,
        loop_max_iterations: int | None = None,
        http_timeout: float | None = None,
        delay_max_seconds: float | None = None,
    ) -> None:
        """Initialize the engine.

        Limits default to the application settings.
        """
        self.sink = sink
        self.connectors = connectors
        self.tables = tables
        self.http_client = http_client
        self.auth = auth or ConnectorAuthResolver(http_client)
        self.registry = registry or get_node_registry()
        self.execution_timeout = execution_timeout or settings.execution_timeout
        self.loop_max_iterations = loop_max_iterations or settings.loop_max_iterations
        self.http_timeout = http_timeout or settings.http_timeout
        self.delay_max_seconds = (
            settings.delay_max_seconds if delay_max_seconds is None else delay_max_seconds
        )

    def compile(self, graph: FlowGraph | dict[str, Any]) -> CompiledGraph:
        """Compile a graph and check every node type has an executor.

        Raises:
            GraphError: If the graph is malformed
        """
        compiled = compile_graph(graph)
        for node in compiled.nodes.values():
            if not self.registry.has(node.type):
                raise GraphError(
                    f"Unknown node type: {node.type}",
                    details={"node_id": node.id},
                )
        return compiled

    async def execute(
        self,
        graph: FlowGraph | dict[str, Any],
        input_data: Any = None,
        *,
        execution_id: str | None = None,
        user_id: str | None = None,
        control: ExecutionControl | None = None,
    ) -> ExecutionResult:
        """Run a flow to completion.

        Node failures never raise; they are reported through the result
        and the sink.

        Raises:
            GraphError: If the graph is malformed (before any node runs)
        """
        compiled = self.compile(graph)
        execution_id = execution_id or str(uuid4())
        started_at = utc_now()
        run = _Run(
            execution_id=execution_id,
            user_id=user_id,
            graph=compiled,
            control=control or ExecutionControl(),
            deadline=time.monotonic() + self.execution_timeout,
            states={node_id: NodeRuntimeState() for node_id in compiled.nodes},
        )

        log = logger.bind(execution_id=execution_id)
        log.info("execution_started", node_count=len(compiled.nodes))
        await self.sink.set_status(execution_id, ExecutionStatus.RUNNING)

        scope = ExecutionScope(input=input_data)
        await self._walk(run, None, scope)

        for state in run.states.values():
            if state.status == NodeStatus.PENDING:
                state.status = NodeStatus.SKIPPED

        output = {
            node_id: scope.outputs[node_id]
            for node_id in compiled.sinks(None)
            if run.states[node_id].status == NodeStatus.SUCCESS
        }
        status = ExecutionStatus.FAILED if run.failed else ExecutionStatus.SUCCESS
        finished_at = utc_now()
        result = ExecutionResult(
            execution_id=execution_id,
            status=status,
            output=output,
            outputs=dict(scope.outputs),
            node_states=run.states,
            error=run.error,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((finished_at - started_at).total_seconds() * 1000),
        )

        await self._log(
            run,
            LogLevel.INFO if status == ExecutionStatus.SUCCESS else LogLevel.ERROR,
            f"Execution finished with status {status.value}",
            data={"status": status.value, "duration_ms": result.duration_ms},
        )
        await self.sink.set_status(execution_id, status, result)
        log.info("execution_finished", status=status.value, duration_ms=result.duration_ms)
        return result

    async def _log(
        self,
        run: _Run,
        level: LogLevel,
        message: str,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self.sink.append(
            run.execution_id,
            LogEntry(level=level, message=message, node_id=node_id, data=data),
        )

    async def _walk(
        self,
        run: _Run,
        loop_id: str | None,
        scope: ExecutionScope,
    ) -> dict[str, NodeStatus]:
        """Run one level of the graph: the top level or one loop iteration.

        Returns the final status of every node of the level.
        """
        graph = run.graph
        members = graph.members(loop_id)
        level = set(members)
        local: dict[str, NodeStatus] = {node_id: NodeStatus.PENDING for node_id in members}
        edges: dict[int, EdgeState] = {}

        def incoming(node_id: str) -> list[FlowEdge]:
            return [e for e in graph.incoming[node_id] if e.source in level]

        def edge_state(edge: FlowEdge) -> EdgeState:
            return edges.get(id(edge), EdgeState.PENDING)

        ready: deque[str] = deque(node_id for node_id in members if not incoming(node_id))

        def settle(node_id: str, status: NodeStatus, edge_for: Callable[[FlowEdge], EdgeState]) -> None:
            """Record a terminal status and enqueue successors that became ready."""
            local[node_id] = status
            run.states[node_id].status = status
            for edge in graph.outgoing[node_id]:
                if edge.target not in level:
                    continue
                edges[id(edge)] = edge_for(edge)
                target = edge.target
                if local[target] == NodeStatus.PENDING and all(
                    edge_state(e) != EdgeState.PENDING for e in incoming(target)
                ):
                    ready.append(target)

        async def skip(node_id: str, reason: str, removed: bool = False) -> None:
            run.states[node_id] = NodeRuntimeState(status=NodeStatus.SKIPPED)
            await self._log(
                run,
                LogLevel.INFO,
                f"Node '{node_id}' skipped: {reason}",
                node_id=node_id,
                data={"status": NodeStatus.SKIPPED.value, "reason": reason},
            )
            after = EdgeState.REMOVED if removed else EdgeState.INACTIVE
            settle(node_id, NodeStatus.SKIPPED, lambda _e: after)

        while ready:
            await self._tick(run)
            for node_id in members:
                if local[node_id] != NodeStatus.PENDING:
                    continue
                if node_id in run.control.delete_ids:
                    await skip(node_id, "deleted by operator", removed=True)
                elif node_id in run.control.skip_ids:
                    await skip(node_id, "skipped by operator")
            if not ready:
                break

            node_id = ready.popleft()
            if local[node_id] != NodeStatus.PENDING:
                continue

            if run.halted is not None:
                reason = "execution timed out" if run.halted == "timeout" else "execution stopped"
                await skip(node_id, reason)
                continue

            states = [edge_state(e) for e in incoming(node_id)]
            live = [s for s in states if s != EdgeState.REMOVED]
            if EdgeState.FAILED in live:
                await skip(node_id, "upstream node failed")
                continue
            if live and EdgeState.ACTIVE not in live:
                await skip(node_id, "branch not taken")
                continue

            await self._run_node(run, node_id, scope, local, settle)

        # Unreachable for valid graphs; keeps every member terminal
        for node_id, status in local.items():
            if status == NodeStatus.PENDING:
                local[node_id] = NodeStatus.SKIPPED
                run.states[node_id].status = NodeStatus.SKIPPED
        return local

    async def _tick(self, run: _Run) -> None:
        # Let control signals and other executions in
        await asyncio.sleep(0)
        if run.halted is None and time.monotonic() >= run.deadline:
            run.halted = "timeout"
            run.failed = True
            run.error = run.error or "Execution timed out"
            logger.warning("execution_timed_out", execution_id=run.execution_id)
            await self._log(
                run,
                LogLevel.ERROR,
                f"Execution timed out after {self.execution_timeout}s",
                data={"timeout": self.execution_timeout},
            )

    async def _run_node(
        self,
        run: _Run,
        node_id: str,
        scope: ExecutionScope,
        local: dict[str, NodeStatus],
        settle: Callable[..., None],
    ) -> None:
        node = run.graph.nodes[node_id]
        local[node_id] = NodeStatus.RUNNING
        run.states[node_id] = NodeRuntimeState(status=NodeStatus.RUNNING)
        await self._log(
            run,
            LogLevel.INFO,
            f"Running {node.type.value} node '{node_id}'",
            node_id=node_id,
            data={"status": NodeStatus.RUNNING.value, "type": node.type.value},
        )

        context = NodeContext(
            execution_id=run.execution_id,
            node_id=node_id,
            scope=scope,
            user_id=run.user_id,
            connectors=self.connectors,
            tables=self.tables,
            auth=self.auth,
            http=self.http_client,
            http_timeout=self.http_timeout,
            delay_max_seconds=self.delay_max_seconds,
        )
        resolver = TemplateResolver(scope)
        config = resolver.resolve(node.config)
        for token in resolver.missing:
            await self._log(
                run,
                LogLevel.WARNING,
                f"Unresolved reference {token}",
                node_id=node_id,
                data={"token": token},
            )

        started = time.monotonic()
        try:
            output = await self.registry.create_instance(node.type).run(config, context)
            await self._flush(run, context)
            if node.type == NodeType.LOOP:
                output = await self._run_loop(run, node_id, output, scope)
        except NodeExecutionError as e:
            await self._flush(run, context)
            await self._fail(run, node_id, e, scope, settle)
            if node.type == NodeType.STOP:
                run.halted = "stop"
            return

        duration_ms = int((time.monotonic() - started) * 1000)
        scope.outputs[node_id] = output
        run.states[node_id] = NodeRuntimeState(status=NodeStatus.SUCCESS, output=output)
        await self._log(
            run,
            LogLevel.INFO,
            f"Node '{node_id}' succeeded",
            node_id=node_id,
            data={
                "status": NodeStatus.SUCCESS.value,
                "duration_ms": duration_ms,
                "output": truncate(output),
            },
        )

        if node.type == NodeType.CONDITION:
            taken = "true" if output.get("result") else "false"
            settle(
                node_id,
                NodeStatus.SUCCESS,
                lambda e: EdgeState.ACTIVE if e.branch == taken else EdgeState.INACTIVE,
            )
        else:
            settle(node_id, NodeStatus.SUCCESS, lambda _e: EdgeState.ACTIVE)

        if node.type == NodeType.STOP:
            run.halted = "stop"
            await self._log(
                run,
                LogLevel.INFO,
                output.get("message") or "Execution stopped",
                node_id=node_id,
            )

    async def _fail(
        self,
        run: _Run,
        node_id: str,
        error: NodeExecutionError,
        scope: ExecutionScope,
        settle: Callable[..., None],
    ) -> None:
        node = run.graph.nodes[node_id]
        detail = error.to_dict()
        run.failed = True
        run.error = run.error or f"{node_id}: {error.message}"
        run.states[node_id] = NodeRuntimeState(status=NodeStatus.ERROR, error=detail)
        logger.info(
            "node_failed",
            execution_id=run.execution_id,
            node_id=node_id,
            kind=error.kind.value,
            http_status=error.http_status,
        )
        await self._log(
            run,
            LogLevel.ERROR,
            f"Node '{node_id}' failed: {error.message}",
            node_id=node_id,
            data={"status": NodeStatus.ERROR.value, "error": detail},
        )

        if not node.continue_on_error:
            settle(node_id, NodeStatus.ERROR, lambda _e: EdgeState.FAILED)
            return

        output = {"error": detail}
        scope.outputs[node_id] = output
        run.states[node_id].output = output
        if node.type == NodeType.CONDITION:
            # A condition that could not be evaluated continues on its false branch
            settle(
                node_id,
                NodeStatus.ERROR,
                lambda e: EdgeState.ACTIVE if e.branch == "false" else EdgeState.INACTIVE,
            )
        else:
            settle(node_id, NodeStatus.ERROR, lambda _e: EdgeState.ACTIVE)

    async def _flush(self, run: _Run, context: NodeContext) -> None:
        for entry in context.logs:
            await self.sink.append(run.execution_id, entry)
        context.logs.clear()

    async def _run_loop(
        self,
        run: _Run,
        loop_id: str,
        loop_output: dict[str, Any],
        scope: ExecutionScope,
    ) -> dict[str, Any]:
        """Run the loop body once per item, in order.

        Raises:
            NodeExecutionError: LoopError on the first failed iteration
        """
        graph = run.graph
        items: list[Any] = loop_output["items"]
        requested = loop_output.get("max_iterations") or self.loop_max_iterations
        limit = min(requested, self.loop_max_iterations)
        if len(items) > limit:
            await self._log(
                run,
                LogLevel.WARNING,
                f"Loop '{loop_id}' has {len(items)} items; only the first {limit} are processed",
                node_id=loop_id,
                data={"items": len(items), "limit": limit},
            )
            items = items[:limit]

        sinks = graph.sinks(loop_id)
        results: list[Any] = []
        for index, item in enumerate(items):
            if run.halted is not None:
                break
            child = scope.child(item, index)
            local = await self._walk(run, loop_id, child)
            if run.halted == "timeout":
                break
            failed = [
                node_id
                for node_id, status in local.items()
                if status == NodeStatus.ERROR and not graph.nodes[node_id].continue_on_error
            ]
            if failed:
                raise NodeExecutionError(
                    message=f"Iteration {index} failed at node '{failed[0]}'",
                    kind=ErrorKind.LOOP,
                    details={"index": index, "failed_nodes": failed, "completed": len(results)},
                )
            results.append(self._iteration_result(sinks, local, child, item))

        if run.halted == "timeout":
            raise NodeExecutionError(
                message="Loop interrupted: execution timed out",
                kind=ErrorKind.LOOP,
                details={"completed": len(results), "total": len(items)},
            )
        return {"result": results, "count": len(results)}

    @staticmethod
    def _iteration_result(
        sinks: list[str],
        local: dict[str, NodeStatus],
        scope: ExecutionScope,
        item: Any,
    ) -> Any:
        if not sinks:
            return item
        succeeded = {s: scope.outputs.get(s) for s in sinks if local[s] == NodeStatus.SUCCESS}
        if len(sinks) == 1:
            return succeeded.get(sinks[0])
        return succeeded
