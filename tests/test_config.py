from __future__ import annotations

import allure
import pytest

from dag_runner.config import ContextSettings, ExecutorSettings, Settings

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.parallel is True
    assert settings.executor.max_concurrent == 4
    assert settings.executor.default_timeout_seconds == 300.0
    assert settings.executor.shell is False
    assert settings.executor.kill_grace_seconds is None
    assert settings.context.max_tokens == 128_000
    assert settings.context.enforce_budget is True
    settings.validate()


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("DAG_RUNNER_PARALLEL", "no")
    monkeypatch.setenv("DAG_RUNNER_MAX_CONCURRENT", "2")
    monkeypatch.setenv("DAG_RUNNER_DEFAULT_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("DAG_RUNNER_FAIL_FAST", "true")
    monkeypatch.setenv("DAG_RUNNER_KILL_GRACE_SECONDS", "0.25")
    monkeypatch.setenv("DAG_RUNNER_MAX_TOKENS", "512")
    monkeypatch.setenv("DAG_RUNNER_CONTEXT_ENFORCE_BUDGET", "off")

    settings = Settings.from_env()

    assert settings.parallel is False
    assert settings.executor.max_concurrent == 2
    assert settings.executor.default_timeout_seconds == 1.5
    assert settings.executor.fail_fast is True
    assert settings.executor.kill_grace_seconds == 0.25
    assert settings.context.max_tokens == 512
    assert settings.context.enforce_budget is False


def test_blank_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("DAG_RUNNER_MAX_CONCURRENT", "  ")
    monkeypatch.setenv("DAG_RUNNER_KILL_GRACE_SECONDS", "")

    settings = Settings.from_env()

    assert settings.executor.max_concurrent == 4
    assert settings.executor.kill_grace_seconds is None


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("DAG_RUNNER_FAIL_FAST", "maybe", "Invalid boolean value for DAG_RUNNER_FAIL_FAST"),
        ("DAG_RUNNER_MAX_CONCURRENT", "four", "Invalid integer value for DAG_RUNNER_MAX_CONCURRENT"),
        (
            "DAG_RUNNER_DEFAULT_TIMEOUT_SECONDS",
            "soon",
            "Invalid numeric value for DAG_RUNNER_DEFAULT_TIMEOUT_SECONDS",
        ),
    ],
)
def test_malformed_environment_values_raise(monkeypatch, name, value, message) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(event_log_limit=0), "DAG_RUNNER_EVENT_LOG_LIMIT"),
        (Settings(executor=ExecutorSettings(max_concurrent=0)), "DAG_RUNNER_MAX_CONCURRENT"),
        (
            Settings(executor=ExecutorSettings(default_timeout_seconds=0)),
            "DAG_RUNNER_DEFAULT_TIMEOUT_SECONDS",
        ),
        (
            Settings(executor=ExecutorSettings(kill_grace_seconds=-1)),
            "DAG_RUNNER_KILL_GRACE_SECONDS",
        ),
        (Settings(context=ContextSettings(max_tokens=0)), "DAG_RUNNER_MAX_TOKENS"),
        (
            Settings(context=ContextSettings(max_history_entries=-1)),
            "DAG_RUNNER_CONTEXT_MAX_HISTORY",
        ),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_summary_reports_effective_values() -> None:
    settings = Settings(
        parallel=False,
        executor=ExecutorSettings(max_concurrent=3, fail_fast=True),
        context=ContextSettings(max_tokens=64),
    )

    assert settings.to_summary() == {
        "max_tokens": 64,
        "max_concurrent": 3,
        "parallel": False,
        "fail_fast": True,
        "default_timeout_seconds": 300.0,
    }
