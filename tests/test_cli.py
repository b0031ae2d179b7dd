from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner
from conftest import exit_command, python_command

from dag_runner import __version__
from dag_runner.main import dag_runner

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Graph Commands"),
]


def _write_graph(path: Path, tasks: list[dict], edges: list[dict] | None = None) -> Path:
    payload: dict = {"tasks": tasks}
    if edges is not None:
        payload["edges"] = edges
    path.write_text(json.dumps(payload), "utf-8")
    return path


def test_version_option() -> None:
    result = CliRunner().invoke(dag_runner, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_validate_reports_valid_graph(tmp_path: Path) -> None:
    graph_path = _write_graph(
        tmp_path / "graph.json",
        [{"id": "a", "command": "true"}, {"id": "b", "command": "true", "depends_on": ["a"]}],
    )

    result = CliRunner().invoke(dag_runner, ["validate", str(graph_path)])

    assert result.exit_code == 0, result.output
    assert "tasks=2" in result.output
    assert "Validation status: valid" in result.output


def test_validate_reports_cycle_and_fails(tmp_path: Path) -> None:
    graph_path = _write_graph(
        tmp_path / "graph.json",
        [{"id": "a", "command": "true"}, {"id": "b", "command": "true"}],
        [{"from": "a", "to": "b"}, {"from": "b", "to": "a"}],
    )

    result = CliRunner().invoke(dag_runner, ["validate", str(graph_path)])

    assert result.exit_code != 0
    assert "error: Cycle detected: a -> b -> a" in result.output
    assert "Validation status: invalid" in result.output


def test_plan_prints_order_and_levels(tmp_path: Path) -> None:
    graph_path = _write_graph(
        tmp_path / "graph.json",
        [
            {"id": "a", "command": "true"},
            {"id": "b", "command": "true", "depends_on": ["a"]},
            {"id": "c", "command": "true", "depends_on": ["a"], "priority": 2},
        ],
    )

    result = CliRunner().invoke(dag_runner, ["plan", str(graph_path)])

    assert result.exit_code == 0, result.output
    assert "Execution order: a -> c -> b" in result.output
    assert "level 0: a" in result.output
    assert "level 1: b, c" in result.output


def test_run_success_writes_report(tmp_path: Path) -> None:
    graph_path = _write_graph(
        tmp_path / "graph.json",
        [
            {"id": "a", "command": python_command("print('a')")},
            {"id": "b", "command": python_command("print('b')"), "depends_on": ["a"]},
        ],
    )
    report_path = tmp_path / "out" / "report.json"

    result = CliRunner().invoke(
        dag_runner,
        ["run", str(graph_path), "--max-concurrent", "2", "--report", str(report_path)],
    )

    assert result.exit_code == 0, result.output
    assert "task=a success=yes exit_code=0" in result.output
    assert "[completed] b" in result.output
    assert "completed=2" in result.output
    report = json.loads(report_path.read_text("utf-8"))
    assert report["statuses"] == {"a": "completed", "b": "completed"}


def test_run_failure_exits_nonzero_and_skips_dependents(tmp_path: Path) -> None:
    graph_path = _write_graph(
        tmp_path / "graph.json",
        [
            {"id": "a", "command": exit_command(3)},
            {"id": "b", "command": python_command("pass"), "depends_on": ["a"]},
        ],
    )

    result = CliRunner().invoke(dag_runner, ["run", str(graph_path), "--sequential"])

    assert result.exit_code != 0
    assert "task=a success=no exit_code=3" in result.output
    assert '"Skipped due to failed dependency: a"' in result.output
    assert "failed=2" in result.output
    assert "Graph run failed." in result.output


def test_run_rejects_invalid_graph(tmp_path: Path) -> None:
    graph_path = _write_graph(
        tmp_path / "graph.json",
        [{"id": "a", "command": "true", "depends_on": ["missing"]}],
    )

    result = CliRunner().invoke(dag_runner, ["run", str(graph_path)])

    assert result.exit_code != 0
    assert "Task a depends on non-existent task: missing" in result.output


def test_validate_reports_malformed_task_without_traceback(tmp_path: Path) -> None:
    graph_path = _write_graph(tmp_path / "graph.json", [{"id": "a", "command": 5}])

    result = CliRunner().invoke(dag_runner, ["validate", str(graph_path)])

    assert result.exit_code != 0
    assert isinstance(result.exception, SystemExit)
    assert "command must be a string" in result.output
    assert "Invalid graph." in result.output


def test_run_reports_unparseable_graph_file(tmp_path: Path) -> None:
    graph_path = tmp_path / "graph.json"
    graph_path.write_text("{not json", "utf-8")

    result = CliRunner().invoke(dag_runner, ["run", str(graph_path)])

    assert result.exit_code != 0
    assert isinstance(result.exception, SystemExit)
    assert f"error: {graph_path}:" in result.output
    assert "Graph run failed." in result.output
