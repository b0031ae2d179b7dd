"""Execution ordering and readiness for task graphs."""

from __future__ import annotations

import heapq
from collections import defaultdict
from collections.abc import Mapping

from dag_runner.graph.models import TaskGraph, TaskStatus


def _build_adjacency(graph: TaskGraph) -> tuple[dict[str, list[str]], dict[str, int]]:
    """Adjacency list (source -> dependents) and in-degree per known node."""

    known = {node.id for node in graph.nodes}
    adjacency: dict[str, list[str]] = defaultdict(list)
    in_degree = {node.id: 0 for node in graph.nodes}
    for source, target in graph.dependency_pairs():
        if source not in known or target not in known:
            continue
        adjacency[source].append(target)
        in_degree[target] += 1
    return adjacency, in_degree


def execution_order(graph: TaskGraph) -> list[str]:
    """Topological order via Kahn's algorithm with priority tie-break.

    Among simultaneously ready tasks the highest ``priority`` goes first;
    equal priorities keep the order in which they became ready. Tasks on a
    cycle never reach in-degree zero and are left out.
    """

    priorities = {node.id: node.priority for node in graph.nodes}
    adjacency, in_degree = _build_adjacency(graph)

    sequence = 0
    heap: list[tuple[int, int, str]] = []
    for task_id, degree in in_degree.items():
        if degree == 0:
            heap.append((-priorities[task_id], sequence, task_id))
            sequence += 1
    heapq.heapify(heap)

    order: list[str] = []
    while heap:
        _, _, task_id = heapq.heappop(heap)
        order.append(task_id)
        for dependent in adjacency.get(task_id, []):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(heap, (-priorities[dependent], sequence, dependent))
                sequence += 1
    return order


def execution_levels(graph: TaskGraph) -> list[list[str]]:
    """Group tasks into levels; every task in a level can run in parallel."""

    adjacency, in_degree = _build_adjacency(graph)
    current = [task_id for task_id, degree in in_degree.items() if degree == 0]

    levels: list[list[str]] = []
    while current:
        levels.append(current)
        following: list[str] = []
        for task_id in current:
            for dependent in adjacency.get(task_id, []):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    following.append(dependent)
        current = following
    return levels


def ready_tasks(graph: TaskGraph, statuses: Mapping[str, TaskStatus]) -> list[str]:
    """Pending tasks whose dependencies have all completed."""

    ready: list[str] = []
    for node in graph.nodes:
        if statuses.get(node.id) != TaskStatus.PENDING:
            continue
        dependencies = graph.dependencies_of(node.id)
        if all(statuses.get(dep) == TaskStatus.COMPLETED for dep in dependencies):
            ready.append(node.id)
    return ready
