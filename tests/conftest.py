"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys

import pytest

from dag_runner.config import ContextSettings, ExecutorSettings, Settings


def python_command(code: str) -> str:
    """Task command running ``code`` with the current interpreter."""

    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def sleep_command(seconds: float) -> str:
    return python_command(f"import time; time.sleep({seconds})")


def exit_command(code: int) -> str:
    return python_command(f"import sys; sys.exit({code})")


@pytest.fixture()
def fast_settings() -> Settings:
    """Settings with short timeouts suitable for subprocess tests."""

    return Settings(
        executor=ExecutorSettings(max_concurrent=4, default_timeout_seconds=30.0),
        context=ContextSettings(max_tokens=10_000),
    )


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep DAG_RUNNER_* variables from the host out of every test."""

    for name in list(os.environ):
        if name.startswith("DAG_RUNNER_"):
            monkeypatch.delenv(name, raising=False)
