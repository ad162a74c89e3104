"""Tests for flow graph compilation."""

import pytest

from flowdash.core.errors import GraphError
from flowdash.core.graph import compile_graph


def node(node_id: str, node_type: str = "transform", **config) -> dict:
    return {"id": node_id, "type": node_type, "config": config or {"expression": "1"}}


class TestCompileGraph:
    def test_empty_graph(self):
        compiled = compile_graph({"nodes": [], "edges": []})

        assert compiled.nodes == {}
        assert compiled.members() == []
        assert compiled.sinks() == []

    def test_adjacency_and_sinks(self):
        compiled = compile_graph(
            {
                "nodes": [node("a"), node("b"), node("c")],
                "edges": [{"source": "a", "target": "b"}, {"source": "a", "target": "c"}],
            }
        )

        assert [e.target for e in compiled.outgoing["a"]] == ["b", "c"]
        assert [e.source for e in compiled.incoming["c"]] == ["a"]
        assert compiled.sinks() == ["b", "c"]

    def test_duplicate_node_id(self):
        with pytest.raises(GraphError, match="Duplicate node id"):
            compile_graph({"nodes": [node("a"), node("a")], "edges": []})

    @pytest.mark.parametrize("reserved", ["loop", "input", "vars"])
    def test_reserved_node_id(self, reserved: str):
        with pytest.raises(GraphError, match="reserved"):
            compile_graph({"nodes": [node(reserved)], "edges": []})

    def test_dangling_edge(self):
        with pytest.raises(GraphError, match="unknown node 'ghost'"):
            compile_graph({"nodes": [node("a")], "edges": [{"source": "a", "target": "ghost"}]})

    def test_unknown_node_type(self):
        with pytest.raises(GraphError, match="Invalid flow graph"):
            compile_graph({"nodes": [{"id": "a", "type": "teleport"}], "edges": []})

    def test_cycle_outside_loop(self):
        with pytest.raises(GraphError, match="cycle") as exc_info:
            compile_graph(
                {
                    "nodes": [node("a"), node("b"), node("c")],
                    "edges": [
                        {"source": "a", "target": "b"},
                        {"source": "b", "target": "c"},
                        {"source": "c", "target": "b"},
                    ],
                }
            )

        assert exc_info.value.details["nodes"] == ["b", "c"]

    def test_condition_edges_need_branch(self):
        with pytest.raises(GraphError, match="branch true or false"):
            compile_graph(
                {
                    "nodes": [node("check", "condition", expression="true"), node("next")],
                    "edges": [{"source": "check", "target": "next"}],
                }
            )

    def test_branch_on_non_condition_edge(self):
        with pytest.raises(GraphError, match="only valid on condition edges"):
            compile_graph(
                {
                    "nodes": [node("a"), node("b")],
                    "edges": [{"source": "a", "target": "b", "branch": "true"}],
                }
            )

    def test_boolean_branch_is_normalized(self):
        compiled = compile_graph(
            {
                "nodes": [node("check", "condition", expression="true"), node("yes")],
                "edges": [{"source": "check", "target": "yes", "branch": True}],
            }
        )

        assert compiled.outgoing["check"][0].branch == "true"

    def test_body_edge_from_non_loop(self):
        with pytest.raises(GraphError, match="Body edge from non-loop"):
            compile_graph(
                {
                    "nodes": [node("a"), node("b")],
                    "edges": [{"source": "a", "target": "b", "branch": "body"}],
                }
            )


class TestLoopBodies:
    def loop_graph(self) -> dict:
        return {
            "nodes": [
                node("each", "loop", items="{{input.items}}"),
                node("fetch"),
                node("store"),
                node("after"),
            ],
            "edges": [
                {"source": "each", "target": "fetch", "branch": "body"},
                {"source": "fetch", "target": "store"},
                {"source": "store", "target": "each"},
                {"source": "each", "target": "after"},
            ],
        }

    def test_body_membership(self):
        compiled = compile_graph(self.loop_graph())

        assert compiled.loop_bodies["each"] == ["fetch", "store"]
        assert compiled.members() == ["each", "after"]
        assert compiled.members("each") == ["fetch", "store"]
        assert compiled.sinks("each") == ["store"]

    def test_back_edge_is_ignored(self):
        compiled = compile_graph(self.loop_graph())

        assert [(e.source, e.target) for e in compiled.back_edges] == [("store", "each")]
        assert all(e.source != "store" for e in compiled.incoming["each"])

    def test_body_node_depending_on_outside_node(self):
        graph = self.loop_graph()
        graph["nodes"].append(node("outside"))
        graph["edges"].append({"source": "outside", "target": "store"})

        with pytest.raises(GraphError, match="depends on 'outside'"):
            compile_graph(graph)

    def test_nested_loop_owner(self):
        compiled = compile_graph(
            {
                "nodes": [
                    node("outer", "loop", items="{{input.rows}}"),
                    node("inner", "loop", items="{{loop.item}}"),
                    node("cell"),
                ],
                "edges": [
                    {"source": "outer", "target": "inner", "branch": "body"},
                    {"source": "inner", "target": "cell", "branch": "body"},
                ],
            }
        )

        assert compiled.owner == {"inner": "outer", "cell": "inner"}
        assert compiled.members("outer") == ["inner"]
        assert compiled.members("inner") == ["cell"]
