"""Per-task context isolation under a token budget.

Each task receives a fresh snapshot built only from its own definition, the
results of its direct dependencies and its own execution history. Nothing is
shared between snapshots, so concurrently running tasks never observe each
other's context.

Token counts are character-based estimates (about four characters per token),
not tokenizer output. When a snapshot exceeds ``max_tokens`` it is flagged as
truncated; with ``enforce_budget`` on, dependency summaries are dropped from
the end of the dependency list (and then the history) until the payload fits.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from dag_runner.config import ContextSettings
from dag_runner.graph.models import (
    ContextSnapshot,
    ExecutionResult,
    IsolationLevel,
    TaskNode,
    utc_now,
)

CHARS_PER_TOKEN = 4
STRICT_PRIORITY_THRESHOLD = 10
LOOSE_DEPENDENCY_THRESHOLD = 3


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Character-based token estimate: ``ceil(len(text) / chars_per_token)``."""

    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def estimate_payload_tokens(payload: Mapping[str, Any]) -> int:
    return estimate_tokens(json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str))


def determine_isolation_level(task: TaskNode) -> IsolationLevel:
    if task.priority >= STRICT_PRIORITY_THRESHOLD:
        return IsolationLevel.STRICT
    if len(task.depends_on) > LOOSE_DEPENDENCY_THRESHOLD:
        return IsolationLevel.LOOSE
    return IsolationLevel.MODERATE


@dataclass(slots=True)
class ContextStats:
    """Aggregate counters over stored snapshots."""

    total_contexts: int
    truncated_contexts: int
    average_tokens: int
    isolation_levels: dict[str, int]


class ContextIsolation:
    """Builds and stores isolated context snapshots for task executions."""

    def __init__(self, settings: ContextSettings | None = None) -> None:
        self.settings = settings or ContextSettings()
        self._snapshots: dict[str, ContextSnapshot] = {}
        self._history: dict[str, list[ExecutionResult]] = {}

    def create_context(
        self,
        task: TaskNode,
        dependency_results: Mapping[str, ExecutionResult] | None = None,
        *,
        extra: Mapping[str, Any] | None = None,
    ) -> ContextSnapshot:
        """Snapshot the task definition plus its dependency outcomes."""

        created_at = utc_now()
        isolation_level = determine_isolation_level(task)
        dependencies = self._summarize_dependencies(dependency_results or {})

        context_data: dict[str, Any] = {
            "task_id": task.id,
            "task_command": task.command,
            "working_dir": task.working_dir,
            "environment": dict(task.env),
            "created_at": created_at.isoformat(),
        }
        if extra:
            context_data.update(extra)
        if self.settings.include_completed_results:
            context_data["dependencies"] = dependencies

        history = self._history.get(task.id, [])
        if history and self.settings.max_history_entries > 0:
            context_data["execution_history"] = [
                {"task_id": item.task_id, "success": item.success, "duration": item.duration}
                for item in history[-self.settings.max_history_entries :]
            ]

        base_tokens = estimate_payload_tokens(context_data)
        truncated = base_tokens > self.settings.max_tokens
        dropped: list[str] = []
        if truncated and self.settings.enforce_budget:
            dropped = self._enforce_budget(context_data, dependencies)

        snapshot = ContextSnapshot(
            task_id=task.id,
            base_tokens=base_tokens,
            max_tokens=self.settings.max_tokens,
            truncated=truncated,
            context_data=context_data,
            summary=(
                self._truncation_summary(
                    base_tokens,
                    estimate_payload_tokens(context_data),
                    dropped,
                    isolation_level,
                )
                if truncated
                else None
            ),
            created_at=created_at,
            dependency_ids=tuple(task.depends_on),
            isolation_level=isolation_level,
            dropped_dependencies=tuple(dropped),
        )
        self._snapshots[snapshot.context_id] = snapshot
        return snapshot

    def record_execution(self, task_id: str, result: ExecutionResult) -> None:
        history = self._history.setdefault(task_id, [])
        history.append(result)
        keep = max(1, self.settings.max_history_entries)
        if len(history) > keep * 2:
            del history[: len(history) - keep]

    def get_history(self, task_id: str) -> list[ExecutionResult]:
        return list(self._history.get(task_id, []))

    def get_context(self, context_id: str) -> ContextSnapshot | None:
        return self._snapshots.get(context_id)

    def get_context_by_task_id(self, task_id: str) -> ContextSnapshot | None:
        """Most recent snapshot created for ``task_id``."""

        for snapshot in reversed(self._snapshots.values()):
            if snapshot.task_id == task_id:
                return snapshot
        return None

    def clear_context(self, task_id: str) -> None:
        for context_id in [cid for cid, s in self._snapshots.items() if s.task_id == task_id]:
            del self._snapshots[context_id]

    def clear_all(self) -> None:
        self._snapshots.clear()
        self._history.clear()

    def get_stats(self) -> ContextStats:
        snapshots = list(self._snapshots.values())
        levels = {level.value: 0 for level in IsolationLevel}
        for snapshot in snapshots:
            levels[snapshot.isolation_level.value] += 1
        total_tokens = sum(snapshot.base_tokens for snapshot in snapshots)
        return ContextStats(
            total_contexts=len(snapshots),
            truncated_contexts=sum(1 for snapshot in snapshots if snapshot.truncated),
            average_tokens=total_tokens // len(snapshots) if snapshots else 0,
            isolation_levels=levels,
        )

    def _summarize_dependencies(
        self,
        dependency_results: Mapping[str, ExecutionResult],
    ) -> dict[str, dict[str, Any]]:
        summaries: dict[str, dict[str, Any]] = {}
        for dependency_id, result in dependency_results.items():
            if not result.success and not self.settings.include_errors:
                continue
            entry: dict[str, Any] = {
                "task_id": dependency_id,
                "success": result.success,
                "exit_code": result.exit_code,
                "duration": result.duration,
                "files_modified": list(result.files_modified),
            }
            if result.error and self.settings.include_errors:
                entry["error"] = result.error
            summaries[dependency_id] = entry
        return summaries

    def _enforce_budget(
        self,
        context_data: dict[str, Any],
        dependencies: dict[str, dict[str, Any]],
    ) -> list[str]:
        """Drop trailing dependency summaries, then history, until under budget."""

        dropped: list[str] = []
        limit = self.settings.max_tokens
        if "dependencies" not in context_data:
            dependencies = {}
        for dependency_id in reversed(list(dependencies)):
            if estimate_payload_tokens(context_data) <= limit:
                break
            del dependencies[dependency_id]
            dropped.append(dependency_id)
        if estimate_payload_tokens(context_data) > limit:
            context_data.pop("execution_history", None)
        dropped.reverse()
        return dropped

    def _truncation_summary(
        self,
        base_tokens: int,
        final_tokens: int,
        dropped: list[str],
        isolation_level: IsolationLevel,
    ) -> str:
        limit = self.settings.max_tokens
        if not self.settings.enforce_budget:
            return (
                f"Context estimate of {base_tokens} tokens exceeds the {limit} token budget; "
                f"payload left intact. Isolation: {isolation_level.value}"
            )
        dropped_text = ", ".join(dropped) if dropped else "none"
        return (
            f"Context truncated from {base_tokens} to {final_tokens} tokens (budget {limit}). "
            f"Dropped dependency summaries: {dropped_text}. Isolation: {isolation_level.value}"
        )
