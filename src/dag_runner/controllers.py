"""Controllers for graph CLI commands."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, replace
from pathlib import Path

from dag_runner.config import Settings
from dag_runner.graph.contracts import read_graph_file, write_run_report
from dag_runner.graph.models import ExecutionResult, GraphValidationResult, TaskStatus
from dag_runner.runtime.executor import ExecutionDeadlockError
from dag_runner.runtime.orchestrator import Orchestrator


@dataclass(slots=True)
class ValidateGraphCommand:
    """CLI input for graph validation."""

    graph_path: Path


@dataclass(slots=True)
class PlanGraphCommand:
    """CLI input for execution plan preview."""

    graph_path: Path


@dataclass(slots=True)
class RunGraphCommand:
    """CLI input for graph execution."""

    graph_path: Path
    sequential: bool = False
    max_concurrent: int | None = None
    fail_fast: bool | None = None
    timeout_seconds: float | None = None
    shell: bool | None = None
    report_path: Path | None = None


@dataclass(slots=True)
class CommandOutput:
    """Rendered lines plus overall success flag."""

    lines: list[str]
    success: bool


class GraphCliController:
    """Translate CLI commands into orchestrator calls and printable lines."""

    def validate(self, command: ValidateGraphCommand) -> CommandOutput:
        orchestrator = Orchestrator(Settings.from_env())
        result = _load_graph(orchestrator, command.graph_path)
        if isinstance(result, CommandOutput):
            return result
        lines = [f"Graph: {command.graph_path} tasks={len(orchestrator.get_graph().nodes)}"]
        lines.extend(f"error: {error}" for error in result.errors)
        lines.extend(f"warning: {warning}" for warning in result.warnings)
        lines.append(f"Validation status: {'valid' if result.valid else 'invalid'}")
        return CommandOutput(lines=lines, success=result.valid)

    def plan(self, command: PlanGraphCommand) -> CommandOutput:
        orchestrator = Orchestrator(Settings.from_env())
        validation = _load_graph(orchestrator, command.graph_path)
        if isinstance(validation, CommandOutput):
            return validation
        if not validation.valid:
            return CommandOutput(
                lines=[f"error: {error}" for error in validation.errors],
                success=False,
            )
        lines = ["Execution order: " + " -> ".join(orchestrator.execution_order())]
        for index, level in enumerate(orchestrator.execution_levels()):
            lines.append(f"level {index}: {', '.join(level)}")
        return CommandOutput(lines=lines, success=True)

    def run(self, command: RunGraphCommand) -> CommandOutput:
        settings = _settings_for_run(command)
        orchestrator = Orchestrator(settings)
        validation = _load_graph(orchestrator, command.graph_path)
        if isinstance(validation, CommandOutput):
            return validation
        if not validation.valid:
            return CommandOutput(
                lines=[f"error: {error}" for error in validation.errors],
                success=False,
            )

        lines: list[str] = []

        def on_progress(task_id: str, status: TaskStatus) -> None:
            lines.append(f"[{status.value}] {task_id}")

        deadlock: ExecutionDeadlockError | None = None
        try:
            if settings.parallel:
                results = asyncio.run(orchestrator.execute_parallel(on_progress=on_progress))
            else:
                results = asyncio.run(orchestrator.execute())
        except ExecutionDeadlockError as error:
            deadlock = error
            results = error.results

        statuses = orchestrator.get_all_statuses()
        lines.extend(_render_result(result) for result in results)
        if deadlock is not None:
            lines.append(str(deadlock))
        counts = dict.fromkeys(TaskStatus, 0)
        for status in statuses.values():
            counts[status] += 1
        lines.append(
            "Run summary: "
            + " ".join(f"{status.value}={counts[status]}" for status in TaskStatus),
        )
        if command.report_path is not None:
            write_run_report(command.report_path, results=results, statuses=statuses)
            lines.append(f"Report written: {command.report_path}")

        success = deadlock is None and all(
            status == TaskStatus.COMPLETED for status in statuses.values()
        )
        return CommandOutput(lines=lines, success=success)


def _load_graph(orchestrator: Orchestrator, path: Path) -> GraphValidationResult | CommandOutput:
    """Read and load a graph file; malformed files become a failed output."""

    try:
        graph = read_graph_file(path)
    except (OSError, TypeError, ValueError) as error:
        return CommandOutput(lines=[f"error: {path}: {error}"], success=False)
    return orchestrator.load_graph(graph)


def _settings_for_run(command: RunGraphCommand) -> Settings:
    settings = Settings.from_env()
    executor = settings.executor
    if command.max_concurrent is not None:
        executor = replace(executor, max_concurrent=command.max_concurrent)
    if command.fail_fast is not None:
        executor = replace(executor, fail_fast=command.fail_fast)
    if command.timeout_seconds is not None:
        executor = replace(executor, default_timeout_seconds=command.timeout_seconds)
    if command.shell is not None:
        executor = replace(executor, shell=command.shell)
    return replace(
        settings,
        parallel=settings.parallel and not command.sequential,
        executor=executor,
    )


def _render_result(result: ExecutionResult) -> str:
    line = (
        f"task={result.task_id} success={'yes' if result.success else 'no'} "
        f"exit_code={result.exit_code} duration={result.duration:.2f}s"
    )
    if result.error:
        line += f" error={json.dumps(result.error, ensure_ascii=False)}"
    return line
