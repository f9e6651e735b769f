"""Declarative workflow graphs: node kinds, edges and structural validation."""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class InputNode(BaseModel):
    """Entry point of the graph; receives the execution input."""

    type: Literal["input"] = "input"
    id: str
    name: Optional[str] = None


class ToolNode(BaseModel):
    """Invokes a named tool with the accumulated state plus fixed arguments."""

    type: Literal["tool"] = "tool"
    id: str
    name: Optional[str] = None
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    output_key: Optional[str] = None


class LlmNode(BaseModel):
    """Calls a language model with a prompt rendered from the state."""

    type: Literal["llm"] = "llm"
    id: str
    name: Optional[str] = None
    model: str = "openai:gpt-4o-mini"
    prompt: str
    system_prompt: Optional[str] = None
    output_key: Optional[str] = None


class OutputNode(BaseModel):
    """Assembles the final result from the accumulated state."""

    type: Literal["output"] = "output"
    id: str
    name: Optional[str] = None
    fields: Dict[str, str] = Field(default_factory=dict)


Node = Annotated[Union[InputNode, ToolNode, LlmNode, OutputNode], Field(discriminator="type")]


class Edge(BaseModel):
    source: str
    target: str


class WorkflowGraph(BaseModel):
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    @classmethod
    def parse(cls, data: Any) -> "WorkflowGraph":
        """Build a graph from loosely typed JSON, raising ``ValidationError``."""
        if isinstance(data, WorkflowGraph):
            return data
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid workflow graph: {exc}") from exc

    def node_map(self) -> Dict[str, Node]:
        return {node.id: node for node in self.nodes}

    def input_node(self) -> InputNode:
        inputs = [node for node in self.nodes if isinstance(node, InputNode)]
        if len(inputs) != 1:
            raise ValidationError(
                f"Workflow graph must have exactly one input node, found {len(inputs)}"
            )
        return inputs[0]

    def successors(self) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = defaultdict(list)
        for edge in self.edges:
            out[edge.source].append(edge.target)
        return out

    def validate_structure(self, tool_names: Optional[Iterable[str]] = None) -> None:
        """Reject graphs the engine cannot walk.

        Checks for an empty graph, duplicate node ids, the single input node,
        dangling edges, unknown tools (when ``tool_names`` is given) and cycles.
        """
        if not self.nodes:
            raise ValidationError("Workflow graph has no nodes")

        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValidationError(f"Duplicate node id: {node.id}")
            seen.add(node.id)

        self.input_node()

        for edge in self.edges:
            if edge.source not in seen or edge.target not in seen:
                raise ValidationError(
                    f"Edge {edge.source} -> {edge.target} references an unknown node"
                )

        if tool_names is not None:
            known = set(tool_names)
            for node in self.nodes:
                if isinstance(node, ToolNode) and node.tool not in known:
                    raise ValidationError(f"Unknown tool '{node.tool}' in node {node.id}")

        if self._has_cycle():
            raise ValidationError("Workflow graph contains a cycle")

    def _has_cycle(self) -> bool:
        indegree = {node.id: 0 for node in self.nodes}
        for edge in self.edges:
            indegree[edge.target] += 1
        succ = self.successors()
        ready = deque(node_id for node_id, deg in indegree.items() if deg == 0)
        visited = 0
        while ready:
            current = ready.popleft()
            visited += 1
            for target in succ.get(current, []):
                indegree[target] -= 1
                if indegree[target] == 0:
                    ready.append(target)
        return visited != len(indegree)

    def execution_order(self) -> List[Node]:
        """Topological order of the nodes reachable from the input node.

        Ties are broken by declaration order so the same graph always yields
        the same step indices.
        """
        start = self.input_node()
        succ = self.successors()
        position = {node.id: i for i, node in enumerate(self.nodes)}

        reachable = {start.id}
        frontier = [start.id]
        while frontier:
            current = frontier.pop()
            for target in succ.get(current, []):
                if target not in reachable:
                    reachable.add(target)
                    frontier.append(target)

        indegree = {node_id: 0 for node_id in reachable}
        for edge in self.edges:
            if edge.source in reachable and edge.target in reachable:
                indegree[edge.target] += 1

        nodes = self.node_map()
        ready = sorted(
            (node_id for node_id, deg in indegree.items() if deg == 0),
            key=position.__getitem__,
        )
        order: List[Node] = []
        while ready:
            current = ready.pop(0)
            order.append(nodes[current])
            for target in succ.get(current, []):
                if target not in indegree:
                    continue
                indegree[target] -= 1
                if indegree[target] == 0:
                    ready.append(target)
                    ready.sort(key=position.__getitem__)
        if len(order) != len(reachable):
            raise ValidationError("Workflow graph contains a cycle")
        return order
