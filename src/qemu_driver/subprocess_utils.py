"""Subprocess lifecycle utilities.

- drain_subprocess_output: concurrent stdout/stderr draining (prevents 64KB pipe deadlock)
- log_task_exception: done-callback for background tasks
- wait_for_path: poll for a file created by another process
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

from qemu_driver._logging import child_output_extra, get_logger

if TYPE_CHECKING:
    from pathlib import Path

    from qemu_driver.platform_utils import ProcessWrapper

logger = get_logger(__name__)

LogSink = Callable[[str, str], None]
"""Receives one line of child output: ``sink(source_label, line)``."""


def default_log_sink(label: str, line: str) -> None:
    """Route child output to the library logger at DEBUG level."""
    logger.debug("%s: %s", label, line, extra=child_output_extra(label, line))


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    label: str,
    log_sink: LogSink,
) -> None:
    """Drain subprocess stdout/stderr concurrently to prevent 64KB pipe deadlock.

    Each decoded line is routed to ``log_sink`` tagged ``<label>[stdout]`` or
    ``<label>[stderr]``.  Returns when both pipes reach EOF.

    Without concurrent draining a chatty child blocks once one pipe buffer
    fills while the reader sits on the other one.

    Args:
        process: ProcessWrapper instance with stdout/stderr pipes
        label: Source label (e.g. "qemu", "virtiofsd-0")
        log_sink: Callback receiving (source label, line)
    """

    async def read_stream(stream: asyncio.StreamReader, source: str) -> None:
        async for line in stream:
            try:
                decoded = line.decode().rstrip()
            except UnicodeDecodeError:
                decoded = line.decode(errors="replace").rstrip()
            if decoded:
                log_sink(source, decoded)

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(read_stream(process.stdout, f"{label}[stdout]"))
        if process.stderr:
            tg.create_task(read_stream(process.stderr, f"{label}[stderr]"))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() that logs any unhandled
    exception from a background task instead of losing it.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )


async def wait_for_path(
    path: Path,
    *,
    timeout: float,
    poll_interval: float = 0.5,
) -> None:
    """Wait for ``path`` to exist.

    Polls the filesystem because there is no async event to await (the file
    is created by an external process).  A zero timeout checks once.

    Raises:
        TimeoutError: Path did not appear within *timeout* seconds.
    """
    if path.exists():
        return
    if timeout <= 0:
        raise TimeoutError(f"{path} does not exist")
    async with asyncio.timeout(timeout):
        while not path.exists():
            await asyncio.sleep(poll_interval)
