"""CLI entrypoint for dag-runner."""

import logging
import sys
from pathlib import Path

import rich_click as click

from dag_runner import __version__
from dag_runner.controllers import (
    CommandOutput,
    GraphCliController,
    PlanGraphCommand,
    RunGraphCommand,
    ValidateGraphCommand,
)

click.rich_click.USE_MARKDOWN = True
GRAPH_CONTROLLER = GraphCliController()

_GRAPH_PATH = click.Path(exists=True, dir_okay=False, path_type=Path)


@click.group()
@click.version_option(version=__version__, prog_name="dag-runner")
@click.option("--verbose", is_flag=True, default=False, help="Log at DEBUG level to stderr.")
def dag_runner(verbose: bool) -> None:
    """Run command-line task graphs with declared dependencies."""

    _configure_logging(logging.DEBUG if verbose else logging.WARNING)


@dag_runner.command("validate")
@click.argument("graph_path", type=_GRAPH_PATH)
def validate(graph_path: Path) -> None:
    """Check a graph file for cycles, duplicates and dangling references."""

    _finish(GRAPH_CONTROLLER.validate(ValidateGraphCommand(graph_path=graph_path)), "Invalid graph.")


@dag_runner.command("plan")
@click.argument("graph_path", type=_GRAPH_PATH)
def plan(graph_path: Path) -> None:
    """Print the execution order and the parallel levels of a graph."""

    _finish(GRAPH_CONTROLLER.plan(PlanGraphCommand(graph_path=graph_path)), "Invalid graph.")


@dag_runner.command("run")
@click.argument("graph_path", type=_GRAPH_PATH)
@click.option(
    "--sequential",
    is_flag=True,
    default=False,
    help="Run tasks one at a time in topological order.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Upper bound on simultaneously running tasks.",
)
@click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Stop launching new tasks after the first failure.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Default per-task timeout in seconds.",
)
@click.option(
    "--shell/--no-shell",
    default=None,
    help="Interpret commands through the host shell. Only for trusted graph files.",
)
@click.option(
    "--report",
    "report_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write a JSON run report to this path.",
)
def run(  # noqa: PLR0913
    graph_path: Path,
    sequential: bool,
    max_concurrent: int | None,
    fail_fast: bool | None,
    timeout_seconds: float | None,
    shell: bool | None,
    report_path: Path | None,
) -> None:
    """Execute every task of a graph file."""

    _finish(
        GRAPH_CONTROLLER.run(
            RunGraphCommand(
                graph_path=graph_path,
                sequential=sequential,
                max_concurrent=max_concurrent,
                fail_fast=fail_fast,
                timeout_seconds=timeout_seconds,
                shell=shell,
                report_path=report_path,
            ),
        ),
        "Graph run failed.",
    )


def _finish(output: CommandOutput, failure_message: str) -> None:
    for line in output.lines:
        click.echo(line)
    if not output.success:
        raise click.ClickException(failure_message)


def _configure_logging(level: int) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_dag_runner", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ),
    )
    handler._dag_runner = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    logging.getLogger("dag_runner").setLevel(level)


if __name__ == "__main__":  # pragma: no cover
    dag_runner()
