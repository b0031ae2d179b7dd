"""Domain models for task graphs and their execution."""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.RUNNING: _TERMINAL_STATUSES,
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class FailureClass(str, Enum):
    """Normalized reasons for an unsuccessful task result."""

    EXIT_CODE = "exit_code"
    LAUNCH_ERROR = "launch_error"
    TIMEOUT = "timeout"
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"


class IsolationLevel(str, Enum):
    """How much surrounding context a task snapshot shares."""

    STRICT = "strict"
    MODERATE = "moderate"
    LOOSE = "loose"


@dataclass(slots=True)
class TaskNode:
    """One command-line task in the graph."""

    id: str
    command: str
    depends_on: list[str] = field(default_factory=list)
    priority: int = 0
    timeout_seconds: float | None = None
    working_dir: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class DependencyEdge:
    """``source`` must complete before ``target`` may start."""

    source: str
    target: str


@dataclass(slots=True)
class TaskGraph:
    """Task nodes plus the dependency edges between them."""

    nodes: list[TaskNode] = field(default_factory=list)
    edges: list[DependencyEdge] = field(default_factory=list)

    def node(self, task_id: str) -> TaskNode | None:
        for node in self.nodes:
            if node.id == task_id:
                return node
        return None

    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def dependency_pairs(self) -> list[tuple[str, str]]:
        """Unique ``(source, target)`` pairs from the edges plus every ``depends_on`` entry.

        Edges come first in declaration order; ``depends_on`` entries without a
        matching edge follow.
        """

        pairs = dict.fromkeys((edge.source, edge.target) for edge in self.edges)
        for node in self.nodes:
            for dependency in node.depends_on:
                pairs.setdefault((dependency, node.id))
        return list(pairs)

    def dependencies_of(self, task_id: str) -> list[str]:
        """Tasks that must finish before ``task_id``, declared either way."""

        return [source for source, target in self.dependency_pairs() if target == task_id]

    def dependents_of(self, task_id: str) -> list[str]:
        return [target for source, target in self.dependency_pairs() if source == task_id]

    def copy(self) -> TaskGraph:
        """Structural deep copy; callers may mutate it freely."""

        return TaskGraph(
            nodes=[copy.deepcopy(node) for node in self.nodes],
            edges=list(self.edges),
        )


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Outcome of one task; immutable once recorded."""

    task_id: str
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    files_modified: tuple[str, ...] = ()
    error: str | None = None
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class ContextSnapshot:
    """Token-budgeted summary of dependency outcomes handed to a task."""

    task_id: str
    base_tokens: int
    max_tokens: int
    truncated: bool
    context_data: dict[str, Any]
    summary: str | None = None
    context_id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)
    dependency_ids: tuple[str, ...] = ()
    isolation_level: IsolationLevel = IsolationLevel.MODERATE
    dropped_dependencies: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class TaskEvent:
    """Audit trail entry for one status transition."""

    task_id: str
    status: TaskStatus
    timestamp: datetime = field(default_factory=utc_now)
    message: str | None = None
    duration: float | None = None
    error: str | None = None
    context_id: str | None = None
    result: ExecutionResult | None = None


@dataclass(slots=True)
class GraphValidationResult:
    """Structural validation outcome; warnings never block execution."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CycleDetectionResult:
    has_cycle: bool
    cycle_path: list[str] | None = None


def create_task_node(
    task_id: str,
    command: str,
    depends_on: Iterable[str] | None = None,
    **options: Any,
) -> TaskNode:
    """Build a task node; ``options`` map onto the remaining TaskNode fields."""

    return TaskNode(id=task_id, command=command, depends_on=list(depends_on or ()), **options)


def create_dependency_edge(source: str, target: str) -> DependencyEdge:
    return DependencyEdge(source=source, target=target)


def create_task_graph(
    nodes: Iterable[TaskNode] | None = None,
    edges: Iterable[DependencyEdge] | None = None,
) -> TaskGraph:
    return TaskGraph(nodes=list(nodes or ()), edges=list(edges or ()))


def graph_from_nodes(nodes: Iterable[TaskNode]) -> TaskGraph:
    """Build a graph whose edges mirror each node's ``depends_on`` list."""

    node_list = list(nodes)
    edges = [
        DependencyEdge(source=dependency, target=node.id)
        for node in node_list
        for dependency in node.depends_on
    ]
    return TaskGraph(nodes=node_list, edges=edges)
