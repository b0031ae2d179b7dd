"""Structural validation for task graphs."""

from __future__ import annotations

from dag_runner.graph.models import CycleDetectionResult, GraphValidationResult, TaskGraph


class GraphValidationError(ValueError):
    """Raised when execution is requested for a structurally invalid graph."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Invalid graph: {', '.join(errors)}")
        self.errors = list(errors)


def validate_graph(graph: TaskGraph) -> GraphValidationResult:
    """Run every structural check and accumulate errors and warnings."""

    errors: list[str] = []
    warnings: list[str] = []

    if not graph.nodes:
        warnings.append("Graph has no nodes")
        return GraphValidationResult(valid=True, errors=errors, warnings=warnings)

    node_ids: set[str] = set()
    for node in graph.nodes:
        if node.id in node_ids:
            errors.append(f"Duplicate node ID: {node.id}")
        node_ids.add(node.id)

    for edge in graph.edges:
        if edge.source not in node_ids:
            errors.append(f"Edge references non-existent source: {edge.source}")
        if edge.target not in node_ids:
            errors.append(f"Edge references non-existent target: {edge.target}")

    for edge in graph.edges:
        if edge.source == edge.target:
            errors.append(f"Self-referencing edge: {edge.source} -> {edge.target}")

    cycle = detect_cycle(graph)
    if cycle.has_cycle and cycle.cycle_path:
        errors.append(f"Cycle detected: {' -> '.join(cycle.cycle_path)}")

    for node in graph.nodes:
        for dependency in node.depends_on:
            if dependency not in node_ids:
                errors.append(f"Task {node.id} depends on non-existent task: {dependency}")

    isolated = find_isolated_nodes(graph)
    if isolated:
        warnings.append(f"Unreachable nodes: {', '.join(isolated)}")

    return GraphValidationResult(valid=not errors, errors=errors, warnings=warnings)


def detect_cycle(graph: TaskGraph) -> CycleDetectionResult:
    """Depth-first search reporting the first cycle found.

    The returned path starts at the node the back-edge points to and ends with
    that same node, e.g. ``["a", "b", "c", "a"]``.
    """

    adjacency: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    for source, target in graph.dependency_pairs():
        if source in adjacency:
            adjacency[source].append(target)

    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    for root in adjacency:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        path.append(root)
        frames = [iter(adjacency[root])]
        while frames:
            dependent = next(frames[-1], None)
            if dependent is None:
                frames.pop()
                on_stack.discard(path.pop())
                continue
            if dependent in on_stack:
                start = path.index(dependent)
                return CycleDetectionResult(has_cycle=True, cycle_path=[*path[start:], dependent])
            if dependent in visited:
                continue
            visited.add(dependent)
            on_stack.add(dependent)
            path.append(dependent)
            frames.append(iter(adjacency.get(dependent, ())))

    return CycleDetectionResult(has_cycle=False)


def find_isolated_nodes(graph: TaskGraph) -> list[str]:
    """Nodes that appear in no edge, neither as source nor as target."""

    connected: set[str] = set()
    for edge in graph.edges:
        connected.add(edge.source)
        connected.add(edge.target)
    return [node.id for node in graph.nodes if node.id not in connected]
