"""Backend interface for task process execution."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol


class BackendRunError(RuntimeError):
    """The task process could not be started."""


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to run one task command."""

    task_id: str
    command: str
    timeout_seconds: float
    working_dir: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    shell: bool = False
    kill_grace_seconds: float | None = None
    track_modified_files: bool = False
    on_started: Callable[[asyncio.subprocess.Process], None] | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Process outcome as observed by the backend."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str
    files_modified: tuple[str, ...] = ()


class TaskBackend(Protocol):
    """Protocol implemented by backend runners."""

    async def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run a task command and return execution metadata."""
