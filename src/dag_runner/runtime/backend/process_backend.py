"""Subprocess-based backend runner for task commands."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
from pathlib import Path

from dag_runner.runtime.backend.base import BackendRunError, BackendRunRequest, BackendRunResult

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
_DRAIN_GRACE_SECONDS = 2.0
_TREE_SNAPSHOT_MAX_FILES = 10_000


class ProcessBackend:
    """Run each task command as an ``asyncio`` subprocess."""

    async def run(self, request: BackendRunRequest) -> BackendRunResult:
        run_args, command_head = _build_run_args(command=request.command, shell=request.shell)
        if request.working_dir is not None and not Path(request.working_dir).is_dir():
            raise BackendRunError(f"Working directory does not exist: {request.working_dir}")

        env = os.environ.copy()
        env.update(request.env)
        root = Path(request.working_dir or os.getcwd())
        before = (
            await asyncio.to_thread(snapshot_tree, root) if request.track_modified_files else None
        )

        try:
            if isinstance(run_args, str):
                process = await asyncio.create_subprocess_shell(
                    run_args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=request.working_dir,
                    env=env,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *run_args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=request.working_dir,
                    env=env,
                )
        except FileNotFoundError as error:
            raise BackendRunError(f"Command not found: {command_head}") from error
        except OSError as error:
            raise BackendRunError(f"Failed to start {command_head}: {error}") from error

        logger.debug("Task %s started as pid %s", request.task_id, process.pid)
        if request.on_started is not None:
            request.on_started(process)

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        readers = [
            asyncio.create_task(_drain(process.stdout, stdout_chunks)),
            asyncio.create_task(_drain(process.stderr, stderr_chunks)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(process.wait(), timeout=request.timeout_seconds)
        except TimeoutError:
            timed_out = True
            logger.warning(
                "Task %s exceeded %ss timeout, sending SIGTERM",
                request.task_id,
                request.timeout_seconds,
            )
            await stop_process(process, kill_grace_seconds=request.kill_grace_seconds)
        except asyncio.CancelledError:
            await stop_process(process, kill_grace_seconds=request.kill_grace_seconds)
            for reader in readers:
                reader.cancel()
            raise

        _, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
        for reader in pending:
            reader.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        files_modified: tuple[str, ...] = ()
        if before is not None:
            after = await asyncio.to_thread(snapshot_tree, root)
            files_modified = diff_tree(before, after)

        return BackendRunResult(
            exit_code=-1 if timed_out or process.returncode is None else process.returncode,
            timed_out=timed_out,
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
            files_modified=files_modified,
        )


def _build_run_args(*, command: str, shell: bool) -> tuple[str | list[str], str]:
    stripped = command.strip()
    if not stripped:
        raise BackendRunError("Task command is empty.")
    if shell:
        return stripped, stripped.split(maxsplit=1)[0]
    try:
        argv = shlex.split(stripped)
    except ValueError as error:
        raise BackendRunError(f"Cannot parse task command {stripped!r}: {error}") from error
    if not argv:
        raise BackendRunError("Task command rendered empty argv.")
    return argv, argv[0]


async def _drain(stream: asyncio.StreamReader | None, chunks: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        chunks.append(chunk)


async def stop_process(
    process: asyncio.subprocess.Process,
    *,
    kill_grace_seconds: float | None,
) -> None:
    """Send SIGTERM; escalate to SIGKILL only when a grace period is configured."""

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    if kill_grace_seconds is None:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=kill_grace_seconds)
    except TimeoutError:
        logger.warning("Process %s ignored SIGTERM, sending SIGKILL", process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


def snapshot_tree(root: Path) -> dict[str, tuple[int, int]]:
    """Map relative file path to ``(mtime_ns, size)``, skipping hidden entries."""

    entries: dict[str, tuple[int, int]] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if not name.startswith(".")]
        for filename in filenames:
            if filename.startswith("."):
                continue
            path = Path(dirpath) / filename
            try:
                stat = path.stat()
            except OSError:
                continue
            entries[str(path.relative_to(root))] = (stat.st_mtime_ns, stat.st_size)
            if len(entries) >= _TREE_SNAPSHOT_MAX_FILES:
                return entries
    return entries


def diff_tree(
    before: dict[str, tuple[int, int]],
    after: dict[str, tuple[int, int]],
) -> tuple[str, ...]:
    """Paths that appeared or whose mtime/size changed."""

    return tuple(sorted(path for path, marker in after.items() if before.get(path) != marker))
