"""JSON file contracts for task graphs and run reports."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict
from pathlib import Path
from typing import Any

from dag_runner.graph.models import (
    DependencyEdge,
    ExecutionResult,
    TaskGraph,
    TaskNode,
    TaskStatus,
    graph_from_nodes,
)

REPORT_CONTRACT_VERSION = 1


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def read_graph_file(path: Path) -> TaskGraph:
    """Deserialize and type-check a graph definition file."""

    return graph_from_payload(load_json(path))


def graph_from_payload(raw: Mapping[str, Any]) -> TaskGraph:
    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list):
        raise TypeError("graph.tasks must be an array")

    nodes = [_parse_task(item) for item in raw_tasks]
    raw_edges = raw.get("edges")
    if raw_edges is None:
        return graph_from_nodes(nodes)
    if not isinstance(raw_edges, list):
        raise TypeError("graph.edges must be an array when provided")
    return TaskGraph(nodes=nodes, edges=[_parse_edge(item) for item in raw_edges])


def graph_to_payload(graph: TaskGraph) -> dict[str, Any]:
    return {
        "tasks": [asdict(node) for node in graph.nodes],
        "edges": [{"from": edge.source, "to": edge.target} for edge in graph.edges],
    }


def write_graph_file(path: Path, graph: TaskGraph) -> None:
    write_json(path, graph_to_payload(graph))


def write_run_report(
    path: Path,
    *,
    results: list[ExecutionResult],
    statuses: Mapping[str, TaskStatus],
) -> None:
    """Persist per-task results and final statuses of one run."""

    write_json(
        path,
        {
            "contract_version": REPORT_CONTRACT_VERSION,
            "statuses": {task_id: status.value for task_id, status in statuses.items()},
            "results": [_result_to_payload(result) for result in results],
        },
    )


def _result_to_payload(result: ExecutionResult) -> dict[str, Any]:
    payload = asdict(result)
    payload["files_modified"] = list(result.files_modified)
    payload["failure_class"] = result.failure_class.value if result.failure_class else None
    return payload


def _parse_task(item: object) -> TaskNode:  # noqa: C901
    if not isinstance(item, dict):
        raise TypeError("graph task entry must be an object")
    task_id = item.get("id")
    command = item.get("command")
    depends_on = item.get("depends_on", [])
    priority = item.get("priority", 0)
    timeout_seconds = item.get("timeout_seconds")
    working_dir = item.get("working_dir")
    env = item.get("env", {})
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValueError("graph task id must be a non-empty string")
    if not isinstance(command, str):
        raise TypeError(f"task {task_id}: command must be a string")
    if not isinstance(depends_on, list) or not all(isinstance(dep, str) for dep in depends_on):
        raise TypeError(f"task {task_id}: depends_on must be an array of strings")
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise TypeError(f"task {task_id}: priority must be an integer")
    if timeout_seconds is not None:
        if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, int | float):
            raise TypeError(f"task {task_id}: timeout_seconds must be a number")
        if timeout_seconds <= 0:
            raise ValueError(f"task {task_id}: timeout_seconds must be > 0")
    if working_dir is not None and not isinstance(working_dir, str):
        raise TypeError(f"task {task_id}: working_dir must be a string when provided")
    if not isinstance(env, dict) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in env.items()
    ):
        raise TypeError(f"task {task_id}: env must map strings to strings")
    return TaskNode(
        id=task_id,
        command=command,
        depends_on=list(depends_on),
        priority=priority,
        timeout_seconds=float(timeout_seconds) if timeout_seconds is not None else None,
        working_dir=working_dir,
        env=dict(env),
    )


def _parse_edge(item: object) -> DependencyEdge:
    if not isinstance(item, dict):
        raise TypeError("graph edge entry must be an object")
    source = item.get("from")
    target = item.get("to")
    if not isinstance(source, str) or not isinstance(target, str):
        raise TypeError("graph edge must have string 'from' and 'to'")
    return DependencyEdge(source=source, target=target)
