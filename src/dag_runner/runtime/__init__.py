"""Context isolation, task execution and orchestration."""

from dag_runner.runtime.context import ContextIsolation, estimate_tokens
from dag_runner.runtime.executor import ExecutionDeadlockError, TaskExecutor
from dag_runner.runtime.orchestrator import Orchestrator

__all__ = [
    "ContextIsolation",
    "ExecutionDeadlockError",
    "Orchestrator",
    "TaskExecutor",
    "estimate_tokens",
]
