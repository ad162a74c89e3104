"""Flow graph compilation and validation.

Turns a FlowGraph snapshot into the adjacency structures the scheduler
walks, rejecting malformed graphs with GraphError before any node runs.

Rules:
- node ids are unique and do not shadow the scope roots (loop, input, vars)
- every edge references existing nodes
- edges leaving a condition node carry branch "true" or "false"
- "body" edges leave loop nodes only; a loop's body is every node reachable
  from its body edges
- an edge from a loop body back to its loop node is a back-edge and is
  ignored for ordering; any other cycle is an error
- nodes inside a loop body only depend on the loop or on other body nodes
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from flowdash.core.errors import GraphError
from flowdash.core.interpolation import RESERVED_ROOTS
from flowdash.models.flow import FlowEdge, FlowGraph, FlowNode
from flowdash.models.node import NodeType

CONDITION_BRANCHES = ("true", "false")
BODY_BRANCH = "body"


@dataclass
class CompiledGraph:
    """Read-only, validated view of a flow graph."""

    nodes: dict[str, FlowNode]
    outgoing: dict[str, list[FlowEdge]]
    incoming: dict[str, list[FlowEdge]]
    loop_bodies: dict[str, list[str]] = field(default_factory=dict)
    owner: dict[str, str] = field(default_factory=dict)  # body node -> innermost loop
    back_edges: list[FlowEdge] = field(default_factory=list)

    def members(self, loop_id: str | None = None) -> list[str]:
        """Nodes walked directly at one level, in declaration order.

        `None` selects the top level; a loop id selects the loop's own body
        without the bodies of loops nested in it.
        """
        return [node_id for node_id in self.nodes if self.owner.get(node_id) == loop_id]

    def sinks(self, loop_id: str | None = None) -> list[str]:
        """Nodes at one level without outgoing edges to that level."""
        level = set(self.members(loop_id))
        return [
            node_id
            for node_id in self.members(loop_id)
            if not any(
                edge.target in level and edge.branch != BODY_BRANCH
                for edge in self.outgoing[node_id]
            )
        ]


def _reachable(start: list[str], edges: dict[str, list[FlowEdge]], stop: str) -> set[str]:
    seen: set[str] = set()
    queue = deque(start)
    while queue:
        node_id = queue.popleft()
        if node_id == stop or node_id in seen:
            continue
        seen.add(node_id)
        queue.extend(edge.target for edge in edges.get(node_id, []))
    return seen


def compile_graph(graph: FlowGraph | dict[str, Any]) -> CompiledGraph:
    """Validate a flow graph and build its adjacency.

    Raises:
        GraphError: If the graph is malformed
    """
    if not isinstance(graph, FlowGraph):
        try:
            graph = FlowGraph.model_validate(graph)
        except ValidationError as e:
            raise GraphError(
                "Invalid flow graph",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    nodes: dict[str, FlowNode] = {}
    for node in graph.nodes:
        if node.id in nodes:
            raise GraphError(f"Duplicate node id: {node.id}", details={"node_id": node.id})
        if node.id in RESERVED_ROOTS:
            raise GraphError(
                f"Node id '{node.id}' is reserved",
                details={"node_id": node.id},
            )
        nodes[node.id] = node

    all_out: dict[str, list[FlowEdge]] = {node_id: [] for node_id in nodes}
    for edge in graph.edges:
        for end in (edge.source, edge.target):
            if end not in nodes:
                raise GraphError(
                    f"Edge {edge.source} -> {edge.target} references unknown node '{end}'",
                    details={"source": edge.source, "target": edge.target},
                )
        source_type = nodes[edge.source].type
        if source_type == NodeType.CONDITION:
            if edge.branch not in CONDITION_BRANCHES:
                raise GraphError(
                    f"Edge from condition '{edge.source}' must have branch true or false",
                    details={"source": edge.source, "target": edge.target},
                )
        elif edge.branch in CONDITION_BRANCHES:
            raise GraphError(
                f"Branch '{edge.branch}' is only valid on condition edges",
                details={"source": edge.source, "target": edge.target},
            )
        if edge.branch == BODY_BRANCH and source_type != NodeType.LOOP:
            raise GraphError(
                f"Body edge from non-loop node '{edge.source}'",
                details={"source": edge.source, "target": edge.target},
            )
        all_out[edge.source].append(edge)

    loops = [node_id for node_id, node in nodes.items() if node.type == NodeType.LOOP]

    # An edge into a loop from a node its body reaches closes an iteration
    back_edges: list[FlowEdge] = []
    for loop_id in loops:
        entries = [e.target for e in all_out[loop_id] if e.branch == BODY_BRANCH]
        reach = _reachable(entries, all_out, stop=loop_id)
        for source in reach:
            back_edges.extend(
                e for e in all_out[source] if e.target == loop_id and e.branch != BODY_BRANCH
            )

    back = {id(edge) for edge in back_edges}
    outgoing: dict[str, list[FlowEdge]] = {
        node_id: [e for e in edges if id(e) not in back] for node_id, edges in all_out.items()
    }
    incoming: dict[str, list[FlowEdge]] = {node_id: [] for node_id in nodes}
    for edges in outgoing.values():
        for edge in edges:
            incoming[edge.target].append(edge)

    _check_acyclic(nodes, outgoing, incoming)

    loop_bodies: dict[str, list[str]] = {}
    for loop_id in loops:
        entries = [e.target for e in outgoing[loop_id] if e.branch == BODY_BRANCH]
        body = _reachable(entries, outgoing, stop=loop_id)
        loop_bodies[loop_id] = [node_id for node_id in nodes if node_id in body]
        for node_id in body:
            for edge in incoming[node_id]:
                if edge.source == loop_id:
                    if edge.branch != BODY_BRANCH:
                        raise GraphError(
                            f"Node '{node_id}' is both inside and after loop '{loop_id}'",
                            details={"loop_id": loop_id, "node_id": node_id},
                        )
                elif edge.source not in body:
                    raise GraphError(
                        f"Node '{node_id}' in the body of loop '{loop_id}' "
                        f"depends on '{edge.source}' outside it",
                        details={"loop_id": loop_id, "node_id": node_id},
                    )

    # Nested bodies are strict subsets, so the smallest body is the innermost
    owner: dict[str, str] = {}
    for loop_id in sorted(loop_bodies, key=lambda l: len(loop_bodies[l]), reverse=True):
        for node_id in loop_bodies[loop_id]:
            owner[node_id] = loop_id

    return CompiledGraph(
        nodes=nodes,
        outgoing=outgoing,
        incoming=incoming,
        loop_bodies=loop_bodies,
        owner=owner,
        back_edges=back_edges,
    )


def _check_acyclic(
    nodes: dict[str, FlowNode],
    outgoing: dict[str, list[FlowEdge]],
    incoming: dict[str, list[FlowEdge]],
) -> None:
    in_degree = {node_id: len(incoming[node_id]) for node_id in nodes}
    queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
    visited = 0
    while queue:
        node_id = queue.popleft()
        visited += 1
        for edge in outgoing[node_id]:
            in_degree[edge.target] -= 1
            if in_degree[edge.target] == 0:
                queue.append(edge.target)
    if visited != len(nodes):
        cyclic = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
        raise GraphError(
            "Flow graph contains a cycle outside a loop body",
            details={"nodes": cyclic},
        )
