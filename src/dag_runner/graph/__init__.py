"""Task graph model, validation and scheduling."""

from dag_runner.graph.models import (
    CycleDetectionResult,
    DependencyEdge,
    ExecutionResult,
    FailureClass,
    GraphValidationResult,
    TaskEvent,
    TaskGraph,
    TaskNode,
    TaskStatus,
    create_dependency_edge,
    create_task_graph,
    create_task_node,
    graph_from_nodes,
)
from dag_runner.graph.scheduler import execution_levels, execution_order, ready_tasks
from dag_runner.graph.validator import (
    GraphValidationError,
    detect_cycle,
    find_isolated_nodes,
    validate_graph,
)

__all__ = [
    "CycleDetectionResult",
    "DependencyEdge",
    "ExecutionResult",
    "FailureClass",
    "GraphValidationError",
    "GraphValidationResult",
    "TaskEvent",
    "TaskGraph",
    "TaskNode",
    "TaskStatus",
    "create_dependency_edge",
    "create_task_graph",
    "create_task_node",
    "detect_cycle",
    "execution_levels",
    "execution_order",
    "find_isolated_nodes",
    "graph_from_nodes",
    "ready_tasks",
    "validate_graph",
]
