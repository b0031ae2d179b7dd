"""Runtime configuration for graph execution."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(slots=True)
class ExecutorSettings:
    """Process launch and concurrency settings."""

    max_concurrent: int = 4
    default_timeout_seconds: float = 300.0
    fail_fast: bool = False
    isolate_contexts: bool = True
    shell: bool = False
    kill_grace_seconds: float | None = None
    track_modified_files: bool = False


@dataclass(slots=True)
class ContextSettings:
    """Per-task context snapshot settings."""

    max_tokens: int = 128_000
    include_completed_results: bool = True
    include_errors: bool = False
    max_history_entries: int = 10
    enforce_budget: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    parallel: bool = True
    event_log_limit: int = 10_000
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    context: ContextSettings = field(default_factory=ContextSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``DAG_RUNNER_*`` environment variables."""

        return cls(
            parallel=_env_bool("DAG_RUNNER_PARALLEL", default=True),
            event_log_limit=_env_int("DAG_RUNNER_EVENT_LOG_LIMIT", 10_000),
            executor=ExecutorSettings(
                max_concurrent=_env_int("DAG_RUNNER_MAX_CONCURRENT", 4),
                default_timeout_seconds=_env_float("DAG_RUNNER_DEFAULT_TIMEOUT_SECONDS", 300.0),
                fail_fast=_env_bool("DAG_RUNNER_FAIL_FAST", default=False),
                isolate_contexts=_env_bool("DAG_RUNNER_ISOLATE_CONTEXTS", default=True),
                shell=_env_bool("DAG_RUNNER_SHELL", default=False),
                kill_grace_seconds=_env_optional_float("DAG_RUNNER_KILL_GRACE_SECONDS"),
                track_modified_files=_env_bool(
                    "DAG_RUNNER_TRACK_MODIFIED_FILES",
                    default=False,
                ),
            ),
            context=ContextSettings(
                max_tokens=_env_int("DAG_RUNNER_MAX_TOKENS", 128_000),
                include_completed_results=_env_bool(
                    "DAG_RUNNER_CONTEXT_INCLUDE_RESULTS",
                    default=True,
                ),
                include_errors=_env_bool("DAG_RUNNER_CONTEXT_INCLUDE_ERRORS", default=False),
                max_history_entries=_env_int("DAG_RUNNER_CONTEXT_MAX_HISTORY", 10),
                enforce_budget=_env_bool("DAG_RUNNER_CONTEXT_ENFORCE_BUDGET", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.event_log_limit <= 0:
            raise ValueError("DAG_RUNNER_EVENT_LOG_LIMIT must be > 0.")
        if self.executor.max_concurrent <= 0:
            raise ValueError("DAG_RUNNER_MAX_CONCURRENT must be > 0.")
        if self.executor.default_timeout_seconds <= 0:
            raise ValueError("DAG_RUNNER_DEFAULT_TIMEOUT_SECONDS must be > 0.")
        if self.executor.kill_grace_seconds is not None and self.executor.kill_grace_seconds < 0:
            raise ValueError("DAG_RUNNER_KILL_GRACE_SECONDS must be >= 0.")
        if self.context.max_tokens <= 0:
            raise ValueError("DAG_RUNNER_MAX_TOKENS must be > 0.")
        if self.context.max_history_entries < 0:
            raise ValueError("DAG_RUNNER_CONTEXT_MAX_HISTORY must be >= 0.")

    def to_summary(self) -> dict[str, object]:
        """Effective configuration as embedded in context snapshots."""

        return {
            "max_tokens": self.context.max_tokens,
            "max_concurrent": self.executor.max_concurrent,
            "parallel": self.parallel,
            "fail_fast": self.executor.fail_fast,
            "default_timeout_seconds": self.executor.default_timeout_seconds,
        }


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    parsed = _env_optional_float(name)
    return default if parsed is None else parsed


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
