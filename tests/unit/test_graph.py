import pytest

from nexusflow.errors import ValidationError
from nexusflow.graph import LlmNode, ToolNode, WorkflowGraph


def test_parse_builds_typed_nodes(graph_data):
    graph = WorkflowGraph.parse(graph_data)
    kinds = [type(node).__name__ for node in graph.nodes]
    assert kinds == ["InputNode", "ToolNode", "LlmNode", "OutputNode"]
    assert isinstance(graph.node_map()["validate"], ToolNode)
    assert isinstance(graph.node_map()["summarize"], LlmNode)


def test_parse_rejects_unknown_node_type():
    with pytest.raises(ValidationError):
        WorkflowGraph.parse({"nodes": [{"type": "webhook", "id": "x"}], "edges": []})


def test_execution_order_follows_edges(graph_data):
    graph = WorkflowGraph.parse(graph_data)
    graph.validate_structure()
    assert [node.id for node in graph.execution_order()] == [
        "input",
        "validate",
        "summarize",
        "output",
    ]


def test_execution_order_breaks_ties_by_declaration():
    graph = WorkflowGraph.parse(
        {
            "nodes": [
                {"type": "input", "id": "in"},
                {"type": "tool", "id": "b", "tool": "echo"},
                {"type": "tool", "id": "a", "tool": "echo"},
                {"type": "output", "id": "out"},
                {"type": "tool", "id": "orphan", "tool": "echo"},
            ],
            "edges": [
                {"source": "in", "target": "b"},
                {"source": "in", "target": "a"},
                {"source": "a", "target": "out"},
                {"source": "b", "target": "out"},
            ],
        }
    )
    assert [node.id for node in graph.execution_order()] == ["in", "b", "a", "out"]


def test_node_without_outgoing_edges_is_terminal():
    graph = WorkflowGraph.parse(
        {
            "nodes": [{"type": "input", "id": "in"}, {"type": "tool", "id": "t", "tool": "echo"}],
            "edges": [{"source": "in", "target": "t"}],
        }
    )
    graph.validate_structure()
    assert len(graph.execution_order()) == 2


@pytest.mark.parametrize(
    "data, message",
    [
        ({"nodes": [], "edges": []}, "no nodes"),
        (
            {"nodes": [{"type": "input", "id": "a"}, {"type": "input", "id": "a"}]},
            "Duplicate node id",
        ),
        ({"nodes": [{"type": "tool", "id": "t", "tool": "echo"}]}, "exactly one input"),
        (
            {
                "nodes": [{"type": "input", "id": "in"}],
                "edges": [{"source": "in", "target": "ghost"}],
            },
            "unknown node",
        ),
    ],
)
def test_validate_structure_rejects_malformed_graphs(data, message):
    graph = WorkflowGraph.parse(data)
    with pytest.raises(ValidationError, match=message):
        graph.validate_structure()


def test_validate_structure_detects_cycles():
    graph = WorkflowGraph.parse(
        {
            "nodes": [
                {"type": "input", "id": "in"},
                {"type": "tool", "id": "a", "tool": "echo"},
                {"type": "tool", "id": "b", "tool": "echo"},
            ],
            "edges": [
                {"source": "in", "target": "a"},
                {"source": "a", "target": "b"},
                {"source": "b", "target": "a"},
            ],
        }
    )
    with pytest.raises(ValidationError, match="cycle"):
        graph.validate_structure()


def test_validate_structure_checks_tool_names(graph_data):
    graph = WorkflowGraph.parse(graph_data)
    graph.validate_structure(["data_validation"])
    with pytest.raises(ValidationError, match="Unknown tool 'data_validation'"):
        graph.validate_structure(["echo"])
