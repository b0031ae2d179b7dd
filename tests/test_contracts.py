from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from dag_runner.graph.contracts import (
    REPORT_CONTRACT_VERSION,
    graph_from_payload,
    graph_to_payload,
    load_json,
    read_graph_file,
    write_graph_file,
    write_run_report,
)
from dag_runner.graph.models import (
    DependencyEdge,
    ExecutionResult,
    FailureClass,
    TaskStatus,
    create_task_node,
    graph_from_nodes,
)

pytestmark = [
    allure.epic("Task Graph"),
    allure.feature("Graph File Contracts"),
]


def test_edges_are_derived_from_depends_on_when_absent() -> None:
    graph = graph_from_payload(
        {
            "tasks": [
                {"id": "a", "command": "echo a"},
                {"id": "b", "command": "echo b", "depends_on": ["a"], "priority": 3},
            ],
        },
    )

    assert graph.edges == [DependencyEdge(source="a", target="b")]
    assert graph.node("b").priority == 3


def test_explicit_edges_are_used_verbatim() -> None:
    graph = graph_from_payload(
        {
            "tasks": [{"id": "a", "command": "x"}, {"id": "b", "command": "y"}],
            "edges": [{"from": "b", "to": "a"}],
        },
    )

    assert graph.edges == [DependencyEdge(source="b", target="a")]
    assert graph.node("a").depends_on == []


def test_graph_file_round_trip(tmp_path: Path) -> None:
    graph = graph_from_nodes(
        [
            create_task_node("a", "echo a", timeout_seconds=5.0, env={"X": "1"}),
            create_task_node("b", "echo b", ["a"], working_dir="/tmp"),
        ],
    )
    path = tmp_path / "nested" / "graph.json"

    write_graph_file(path, graph)

    assert read_graph_file(path) == graph
    assert load_json(path)["edges"] == [{"from": "a", "to": "b"}]


@pytest.mark.parametrize(
    ("payload", "error_type", "message"),
    [
        ({"tasks": {}}, TypeError, "graph.tasks must be an array"),
        ({"tasks": [{"id": "", "command": "x"}]}, ValueError, "non-empty string"),
        ({"tasks": [{"id": "a", "command": 1}]}, TypeError, "command must be a string"),
        (
            {"tasks": [{"id": "a", "command": "x", "priority": True}]},
            TypeError,
            "priority must be an integer",
        ),
        (
            {"tasks": [{"id": "a", "command": "x", "timeout_seconds": 0}]},
            ValueError,
            "timeout_seconds must be > 0",
        ),
        (
            {"tasks": [{"id": "a", "command": "x", "env": {"K": 1}}]},
            TypeError,
            "env must map strings to strings",
        ),
        ({"tasks": [], "edges": [{"from": "a"}]}, TypeError, "string 'from' and 'to'"),
    ],
)
def test_malformed_payloads_are_rejected(payload, error_type, message) -> None:
    with pytest.raises(error_type, match=message):
        graph_from_payload(payload)


def test_load_json_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / "graph.json"
    path.write_text("[]", "utf-8")

    with pytest.raises(TypeError, match="Expected JSON object"):
        load_json(path)


def test_run_report_contains_statuses_and_results(tmp_path: Path) -> None:
    path = tmp_path / "report.json"
    results = [
        ExecutionResult(task_id="a", success=True, exit_code=0, duration=0.5),
        ExecutionResult(
            task_id="b",
            success=False,
            exit_code=-1,
            error="Skipped due to failed dependency: a",
            failure_class=FailureClass.DEPENDENCY_FAILED,
        ),
    ]

    write_run_report(
        path,
        results=results,
        statuses={"a": TaskStatus.COMPLETED, "b": TaskStatus.FAILED},
    )

    payload = json.loads(path.read_text("utf-8"))
    assert payload["contract_version"] == REPORT_CONTRACT_VERSION
    assert payload["statuses"] == {"a": "completed", "b": "failed"}
    assert payload["results"][1]["failure_class"] == "dependency_failed"
    assert payload["results"][0]["files_modified"] == []


def test_graph_to_payload_keeps_task_fields() -> None:
    graph = graph_from_nodes([create_task_node("a", "echo", priority=2)])

    payload = graph_to_payload(graph)

    assert payload["tasks"][0]["priority"] == 2
    assert payload["edges"] == []
