"""Task backend implementations."""

from dag_runner.runtime.backend.base import (
    BackendRunError,
    BackendRunRequest,
    BackendRunResult,
    TaskBackend,
)
from dag_runner.runtime.backend.process_backend import ProcessBackend

__all__ = [
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "ProcessBackend",
    "TaskBackend",
]
