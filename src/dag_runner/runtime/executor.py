"""Task executor with bounded concurrency and failure propagation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace

from dag_runner.config import ExecutorSettings
from dag_runner.graph.models import (
    ContextSnapshot,
    ExecutionResult,
    FailureClass,
    TaskEvent,
    TaskGraph,
    TaskNode,
    TaskStatus,
)
from dag_runner.runtime.backend import BackendRunError, BackendRunRequest, ProcessBackend, TaskBackend
from dag_runner.runtime.context import ContextIsolation

logger = logging.getLogger(__name__)

EventHandler = Callable[[TaskEvent], None]
ProgressCallback = Callable[[str, TaskStatus], None]


class ExecutionDeadlockError(RuntimeError):
    """No task can start, none is running, and the run is incomplete."""

    def __init__(self, stuck_task_ids: list[str], results: list[ExecutionResult]) -> None:
        super().__init__(
            "Execution deadlocked; tasks waiting on dependencies that never finish: "
            + ", ".join(stuck_task_ids),
        )
        self.stuck_task_ids = stuck_task_ids
        self.results = results


def dependency_failure_result(task_id: str, failed_dependency: str) -> ExecutionResult:
    """Synthetic result for a task skipped because a direct dependency failed."""

    return ExecutionResult(
        task_id=task_id,
        success=False,
        exit_code=-1,
        error=f"Skipped due to failed dependency: {failed_dependency}",
        failure_class=FailureClass.DEPENDENCY_FAILED,
    )


class TaskExecutor:
    """Launches task processes, tracks them, and broadcasts status events."""

    def __init__(
        self,
        settings: ExecutorSettings | None = None,
        *,
        backend: TaskBackend | None = None,
        context_isolation: ContextIsolation | None = None,
    ) -> None:
        self.settings = settings or ExecutorSettings()
        self.backend = backend or ProcessBackend()
        self.context_isolation = context_isolation or ContextIsolation()
        self._running: dict[str, asyncio.subprocess.Process] = {}
        self._cancelled: set[str] = set()
        self._launching: set[str] = set()
        self._handlers: list[EventHandler] = []

    @property
    def running_count(self) -> int:
        return len(self._running)

    def running_task_ids(self) -> list[str]:
        return list(self._running)

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def off_event(self, handler: EventHandler) -> None:
        with contextlib.suppress(ValueError):
            self._handlers.remove(handler)

    def emit(self, event: TaskEvent) -> None:
        """Dispatch to every handler; a failing handler never stops the others."""

        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for task %s", event.task_id)

    async def execute(
        self,
        task: TaskNode,
        graph: TaskGraph,
        dependency_results: Mapping[str, ExecutionResult] | None = None,
    ) -> ExecutionResult:
        """Run one task to completion, timeout, cancellation or launch failure."""

        started = time.monotonic()
        context: ContextSnapshot | None = None
        if self.settings.isolate_contexts:
            context = self.context_isolation.create_context(task, dependency_results)
        context_id = context.context_id if context is not None else None
        self._cancelled.discard(task.id)
        self._launching.add(task.id)

        self.emit(
            TaskEvent(
                task_id=task.id,
                status=TaskStatus.RUNNING,
                message=f"Executing task: {task.command}",
                context_id=context_id,
            ),
        )
        logger.info("Task %s started", task.id)

        timeout_seconds = (
            task.timeout_seconds
            if task.timeout_seconds is not None
            else self.settings.default_timeout_seconds
        )
        request = BackendRunRequest(
            task_id=task.id,
            command=task.command,
            timeout_seconds=timeout_seconds,
            working_dir=task.working_dir,
            env=dict(task.env),
            shell=self.settings.shell,
            kill_grace_seconds=self.settings.kill_grace_seconds,
            track_modified_files=self.settings.track_modified_files,
            on_started=lambda process: self._register(task.id, process),
        )

        try:
            execution = await self.backend.run(request)
        except asyncio.CancelledError:
            if task.id not in self._cancelled:
                logger.warning("Task %s run was cancelled by its caller", task.id)
                self.emit(
                    TaskEvent(
                        task_id=task.id,
                        status=TaskStatus.CANCELLED,
                        duration=time.monotonic() - started,
                        context_id=context_id,
                    ),
                )
            self._cancelled.discard(task.id)
            raise
        except BackendRunError as error:
            result = ExecutionResult(
                task_id=task.id,
                success=False,
                exit_code=-1,
                stderr=str(error),
                duration=time.monotonic() - started,
                error=str(error),
                failure_class=FailureClass.LAUNCH_ERROR,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Backend raised unexpectedly for task %s", task.id)
            result = ExecutionResult(
                task_id=task.id,
                success=False,
                exit_code=-1,
                stderr=str(error),
                duration=time.monotonic() - started,
                error=str(error),
                failure_class=FailureClass.LAUNCH_ERROR,
            )
        else:
            result = self._build_result(
                task=task,
                execution_exit_code=execution.exit_code,
                timed_out=execution.timed_out,
                stdout=execution.stdout,
                stderr=execution.stderr,
                files_modified=execution.files_modified,
                duration=time.monotonic() - started,
                timeout_seconds=timeout_seconds,
            )
        finally:
            self._running.pop(task.id, None)
            self._launching.discard(task.id)

        if task.id in self._cancelled and result.failure_class != FailureClass.CANCELLED:
            # Cancelled while launching; the launch itself failed afterwards.
            result = replace(result, error="Task was cancelled", failure_class=FailureClass.CANCELLED)

        if context is not None:
            self.context_isolation.record_execution(task.id, result)

        if result.failure_class == FailureClass.CANCELLED:
            self._cancelled.discard(task.id)
            logger.info("Task %s cancelled after %.2fs", task.id, result.duration)
            return result

        logger.info(
            "Task %s %s in %.2fs (exit code %s)",
            task.id,
            "completed" if result.success else "failed",
            result.duration,
            result.exit_code,
        )
        self.emit(
            TaskEvent(
                task_id=task.id,
                status=TaskStatus.COMPLETED if result.success else TaskStatus.FAILED,
                duration=result.duration,
                error=result.error,
                context_id=context_id,
                result=result,
            ),
        )
        return result

    async def execute_parallel(  # noqa: C901, PLR0912
        self,
        tasks: Sequence[TaskNode],
        graph: TaskGraph,
        on_progress: ProgressCallback | None = None,
    ) -> list[ExecutionResult]:
        """Run ``tasks`` respecting ``depends_on`` with at most ``max_concurrent`` in flight.

        Readiness is re-evaluated after every completion. A task whose direct
        dependency finished unsuccessfully is recorded as skipped without
        launching. With ``fail_fast`` no new task starts after the first
        failure; tasks already running are awaited.
        """

        results: list[ExecutionResult] = []
        result_map: dict[str, ExecutionResult] = {}
        in_flight: dict[asyncio.Task[ExecutionResult], str] = {}
        running_ids: set[str] = set()
        stop_launching = False

        def record(result: ExecutionResult) -> None:
            results.append(result)
            result_map[result.task_id] = result

        try:
            while len(result_map) < len(tasks):
                if not stop_launching:
                    for skipped in self._propagate_failures(tasks, result_map, running_ids):
                        record(skipped)
                        self._notify_progress(on_progress, skipped.task_id, TaskStatus.FAILED)

                    ready = sorted(
                        (
                            task
                            for task in tasks
                            if task.id not in result_map
                            and task.id not in running_ids
                            and all(dep in result_map for dep in task.depends_on)
                        ),
                        key=lambda task: -task.priority,
                    )
                    available_slots = self.settings.max_concurrent - len(in_flight)
                    for task in ready[: max(0, available_slots)]:
                        dependency_results = {
                            dep: result_map[dep] for dep in task.depends_on if dep in result_map
                        }
                        running_ids.add(task.id)
                        self._notify_progress(on_progress, task.id, TaskStatus.RUNNING)
                        future = asyncio.create_task(self.execute(task, graph, dependency_results))
                        in_flight[future] = task.id

                if len(result_map) == len(tasks):
                    break
                if not in_flight:
                    if stop_launching:
                        break
                    stuck = [task.id for task in tasks if task.id not in result_map]
                    logger.error("Execution deadlocked with pending tasks: %s", ", ".join(stuck))
                    raise ExecutionDeadlockError(stuck, results)

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for future in done:
                    task_id = in_flight.pop(future)
                    running_ids.discard(task_id)
                    result = future.result()
                    record(result)
                    if result.success:
                        status = TaskStatus.COMPLETED
                    elif result.failure_class == FailureClass.CANCELLED:
                        status = TaskStatus.CANCELLED
                    else:
                        status = TaskStatus.FAILED
                    self._notify_progress(on_progress, task_id, status)
                    if not result.success and self.settings.fail_fast and not stop_launching:
                        logger.warning("Task %s failed; fail-fast stops new launches", task_id)
                        stop_launching = True
        finally:
            # Reached with tasks in flight only when this driver is itself cancelled.
            for future in in_flight:
                future.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        return results

    def cancel(self, task_id: str) -> bool:
        """Send SIGTERM to a running task; True when the task was running or launching.

        A task whose process is not registered yet is marked, and its process is
        terminated as soon as the backend reports it started.
        """

        process = self._running.pop(task_id, None)
        if process is not None:
            self._signal_cancel(task_id, process)
            return True
        if task_id in self._launching and task_id not in self._cancelled:
            self._mark_cancelled(task_id)
            return True
        return False

    def cancel_all(self) -> int:
        running = list(self._running.items())
        self._running.clear()
        running_ids = {task_id for task_id, _ in running}
        launching = [
            task_id
            for task_id in self._launching
            if task_id not in self._cancelled and task_id not in running_ids
        ]
        for task_id, process in running:
            self._signal_cancel(task_id, process)
        for task_id in launching:
            self._mark_cancelled(task_id)
        return len(running) + len(launching)

    def _signal_cancel(self, task_id: str, process: asyncio.subprocess.Process) -> None:
        self._mark_cancelled(task_id)
        self._stop(process)

    def _mark_cancelled(self, task_id: str) -> None:
        self._cancelled.add(task_id)
        logger.warning("Task %s cancelled", task_id)
        self.emit(TaskEvent(task_id=task_id, status=TaskStatus.CANCELLED))

    def _stop(self, process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        grace = self.settings.kill_grace_seconds
        if grace is not None:
            with contextlib.suppress(RuntimeError):
                asyncio.get_running_loop().call_later(grace, _kill_if_alive, process)

    def _register(self, task_id: str, process: asyncio.subprocess.Process) -> None:
        if task_id in self._cancelled:
            self._stop(process)
            return
        self._running[task_id] = process

    def _build_result(  # noqa: PLR0913
        self,
        *,
        task: TaskNode,
        execution_exit_code: int,
        timed_out: bool,
        stdout: str,
        stderr: str,
        files_modified: tuple[str, ...],
        duration: float,
        timeout_seconds: float,
    ) -> ExecutionResult:
        if task.id in self._cancelled:
            return ExecutionResult(
                task_id=task.id,
                success=False,
                exit_code=execution_exit_code,
                stdout=stdout,
                stderr=stderr,
                duration=duration,
                files_modified=files_modified,
                error="Task was cancelled",
                failure_class=FailureClass.CANCELLED,
            )
        if timed_out:
            return ExecutionResult(
                task_id=task.id,
                success=False,
                exit_code=-1,
                stdout=stdout,
                stderr=stderr,
                duration=duration,
                files_modified=files_modified,
                error=f"Task timed out after {timeout_seconds}s",
                failure_class=FailureClass.TIMEOUT,
            )
        success = execution_exit_code == 0
        return ExecutionResult(
            task_id=task.id,
            success=success,
            exit_code=execution_exit_code,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
            files_modified=files_modified,
            error=None if success else f"Command exited with code {execution_exit_code}",
            failure_class=None if success else FailureClass.EXIT_CODE,
        )

    def _propagate_failures(
        self,
        tasks: Sequence[TaskNode],
        result_map: Mapping[str, ExecutionResult],
        running_ids: set[str],
    ) -> list[ExecutionResult]:
        """Skip every task whose direct dependency failed, cascading downstream."""

        skipped: list[ExecutionResult] = []
        known = dict(result_map)
        changed = True
        while changed:
            changed = False
            for task in tasks:
                if task.id in known or task.id in running_ids:
                    continue
                failed = next(
                    (dep for dep in task.depends_on if dep in known and not known[dep].success),
                    None,
                )
                if failed is None:
                    continue
                result = dependency_failure_result(task.id, failed)
                known[task.id] = result
                skipped.append(result)
                changed = True
                logger.info("Task %s skipped: dependency %s failed", task.id, failed)
                self.emit(
                    TaskEvent(
                        task_id=task.id,
                        status=TaskStatus.FAILED,
                        error=result.error,
                        duration=0.0,
                        result=result,
                    ),
                )
        return skipped

    @staticmethod
    def _notify_progress(
        on_progress: ProgressCallback | None,
        task_id: str,
        status: TaskStatus,
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(task_id, status)
        except Exception:
            logger.exception("Progress callback failed for task %s", task_id)


def _kill_if_alive(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
