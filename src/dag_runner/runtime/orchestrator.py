"""Orchestrator owning graph state, task statuses, results and the event log."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import replace
from typing import Any

from dag_runner.config import Settings
from dag_runner.graph.models import (
    ALLOWED_TRANSITIONS,
    ContextSnapshot,
    ExecutionResult,
    GraphValidationResult,
    TaskEvent,
    TaskGraph,
    TaskStatus,
)
from dag_runner.graph.scheduler import execution_levels, execution_order, ready_tasks
from dag_runner.graph.validator import GraphValidationError, find_isolated_nodes, validate_graph
from dag_runner.runtime.context import ContextIsolation
from dag_runner.runtime.executor import (
    EventHandler,
    ExecutionDeadlockError,
    ProgressCallback,
    TaskExecutor,
    dependency_failure_result,
)

logger = logging.getLogger(__name__)


class Orchestrator:
    """Composes validation, scheduling, context isolation and execution.

    Lifecycle: ``load_graph`` -> ``validate`` -> ``execute`` (sequential) or
    ``execute_parallel`` -> queries -> ``reset``. Task statuses and results are
    updated only from executor events, plus the synthetic records written for
    tasks skipped because a dependency failed.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        executor: TaskExecutor | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._settings.validate()
        self.context_isolation = ContextIsolation(self._settings.context)
        self.executor = executor or TaskExecutor(
            self._settings.executor,
            context_isolation=self.context_isolation,
        )
        self.executor.on_event(self._handle_event)

        self._graph = TaskGraph()
        self._statuses: dict[str, TaskStatus] = {}
        self._results: dict[str, ExecutionResult] = {}
        self._events: deque[TaskEvent] = deque(maxlen=self._settings.event_log_limit)
        self._snapshots: dict[str, ContextSnapshot] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    def update_settings(self, **changes: Any) -> Settings:
        """Replace top-level settings fields and push them to collaborators."""

        updated = replace(self._settings, **changes)
        updated.validate()
        self._settings = updated
        self.executor.settings = updated.executor
        self.context_isolation.settings = updated.context
        if updated.event_log_limit != self._events.maxlen:
            self._events = deque(self._events, maxlen=updated.event_log_limit)
        return updated

    def load_graph(self, graph: TaskGraph) -> GraphValidationResult:
        """Replace the active graph, reset derived state and validate."""

        self._graph = graph.copy()
        self._reset_state()
        result = validate_graph(self._graph)
        if not result.valid:
            logger.warning("Loaded invalid graph: %s", "; ".join(result.errors))
        for warning in result.warnings:
            logger.info("Graph warning: %s", warning)
        return result

    def validate(self) -> GraphValidationResult:
        return validate_graph(self._graph)

    def validate_graph(self, graph: TaskGraph) -> GraphValidationResult:
        return validate_graph(graph)

    def execution_order(self) -> list[str]:
        return execution_order(self._graph)

    def execution_levels(self) -> list[list[str]]:
        return execution_levels(self._graph)

    def ready_tasks(self) -> list[str]:
        return ready_tasks(self._graph, self._statuses)

    def unreachable_tasks(self) -> list[str]:
        return find_isolated_nodes(self._graph)

    async def execute(self) -> list[ExecutionResult]:
        """Sequential driver walking ``execution_order()``.

        A task whose direct dependency has a failed result is recorded as
        skipped without launching; the skip itself is a failed result, so the
        failure cascades one level at a time down the chain.
        """

        self._ensure_runnable()
        results: list[ExecutionResult] = []
        for task_id in self.execution_order():
            node = self._graph.node(task_id)
            if node is None:
                continue

            dependencies = self._graph.dependencies_of(task_id)
            failed_dependency = next(
                (
                    dep
                    for dep in dependencies
                    if dep in self._results and not self._results[dep].success
                ),
                None,
            )
            if failed_dependency is not None:
                result = dependency_failure_result(task_id, failed_dependency)
                logger.info("Task %s skipped: dependency %s failed", task_id, failed_dependency)
                self._handle_event(
                    TaskEvent(
                        task_id=task_id,
                        status=TaskStatus.FAILED,
                        duration=0.0,
                        error=result.error,
                        result=result,
                    ),
                )
                results.append(result)
                continue

            dependency_results = {
                dep: self._results[dep] for dep in dependencies if dep in self._results
            }
            result = await self.executor.execute(node, self._graph, dependency_results)
            self._absorb_results([result])
            results.append(result)
            if not result.success and self._settings.executor.fail_fast:
                logger.warning("Task %s failed; fail-fast stops the sequential run", task_id)
                break
        return results

    async def execute_parallel(
        self,
        on_progress: ProgressCallback | None = None,
    ) -> list[ExecutionResult]:
        """Bounded-concurrency run of the whole graph via the executor."""

        self._ensure_runnable()
        # Edge-only dependencies are folded into depends_on for readiness checks.
        tasks = [
            replace(node, depends_on=self._graph.dependencies_of(node.id))
            for node in self._graph.nodes
        ]
        try:
            results = await self.executor.execute_parallel(
                tasks,
                self._graph,
                on_progress=on_progress,
            )
        except ExecutionDeadlockError as error:
            self._absorb_results(error.results)
            raise
        self._absorb_results(results)
        return results

    async def run(self, on_progress: ProgressCallback | None = None) -> list[ExecutionResult]:
        """Dispatch to the parallel or sequential driver per settings."""

        if self._settings.parallel:
            return await self.execute_parallel(on_progress=on_progress)
        return await self.execute()

    def cancel(self, task_id: str) -> bool:
        return self.executor.cancel(task_id)

    def cancel_all(self) -> int:
        return self.executor.cancel_all()

    def on_event(self, handler: EventHandler) -> None:
        self.executor.on_event(handler)

    def off_event(self, handler: EventHandler) -> None:
        self.executor.off_event(handler)

    def create_context_snapshot(self, task_id: str) -> ContextSnapshot:
        """Snapshot the effective config plus successful direct-dependency results."""

        node = self._graph.node(task_id)
        if node is None:
            raise KeyError(f"Unknown task: {task_id}")
        dependency_ids = self._graph.dependencies_of(task_id)
        dependency_results = {
            dep: self._results[dep] for dep in dependency_ids if dep in self._results
        }
        snapshot = self.context_isolation.create_context(
            node,
            dependency_results,
            extra={"config": self._settings.to_summary()},
        )
        self._snapshots[task_id] = snapshot
        return snapshot

    def get_context_snapshot(self, task_id: str) -> ContextSnapshot | None:
        return self._snapshots.get(task_id)

    def get_task_status(self, task_id: str) -> TaskStatus | None:
        return self._statuses.get(task_id)

    def get_all_statuses(self) -> dict[str, TaskStatus]:
        return dict(self._statuses)

    def get_result(self, task_id: str) -> ExecutionResult | None:
        return self._results.get(task_id)

    def get_all_results(self) -> dict[str, ExecutionResult]:
        return dict(self._results)

    def get_events(self) -> list[TaskEvent]:
        return list(self._events)

    def get_graph(self) -> TaskGraph:
        return self._graph.copy()

    def reset(self) -> None:
        """Discard derived state; every loaded task returns to pending."""

        self._reset_state()

    def cleanup(self) -> None:
        self.reset()

    def _reset_state(self) -> None:
        self._statuses = {node.id: TaskStatus.PENDING for node in self._graph.nodes}
        self._results.clear()
        self._events.clear()
        self._snapshots.clear()
        self.context_isolation.clear_all()

    def _ensure_runnable(self) -> None:
        validation = validate_graph(self._graph)
        if not validation.valid:
            raise GraphValidationError(validation.errors)
        started = [
            task_id for task_id, status in self._statuses.items() if status != TaskStatus.PENDING
        ]
        if started:
            raise RuntimeError(
                f"Tasks already executed: {', '.join(started)}. Call reset() before re-running.",
            )

    def _absorb_results(self, results: list[ExecutionResult]) -> None:
        """Record results whose terminal event carried none (cancelled tasks)."""

        for result in results:
            if (
                self._statuses.get(result.task_id) == TaskStatus.CANCELLED
                and result.task_id not in self._results
            ):
                self._results[result.task_id] = result

    def _handle_event(self, event: TaskEvent) -> None:
        current = self._statuses.get(event.task_id)
        if current is None:
            logger.debug("Ignoring event for task %s outside the loaded graph", event.task_id)
            return
        if event.status not in ALLOWED_TRANSITIONS[current]:
            logger.debug(
                "Ignoring transition %s -> %s for task %s",
                current.value,
                event.status.value,
                event.task_id,
            )
            return
        self._statuses[event.task_id] = event.status
        if event.result is not None:
            self._results[event.task_id] = event.result
        self._events.append(event)
