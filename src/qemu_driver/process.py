"""Supervised child processes (QEMU and virtiofsd).

ManagedProcess owns one OS process: its ProcessWrapper handle, a background
task draining stdout/stderr into the log sink, and an exit-wait task that
converts the exit status into the process's CompletionSignal value.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import shutil
import signal
import subprocess
from typing import TYPE_CHECKING, Any

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.completion import CompletionSignal
from qemu_driver.exceptions import ProcessExitError, StartupError
from qemu_driver.platform_utils import ProcessWrapper
from qemu_driver.subprocess_utils import LogSink, default_log_sink, drain_subprocess_output, log_task_exception

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from qemu_driver.fd_template import InjectedFiles

logger = get_logger(__name__)


def _fd_remapper(fds: Sequence[int]) -> Callable[[], None]:
    """preexec_fn placing ``fds`` at 3, 4, 5, ... in the child.

    pass_fds keeps the parent's descriptor numbers, but QEMU is told the
    numbers chosen during templating.  Sources are first staged above the
    target range (close-on-exec) so a source that already sits on a target
    number is not clobbered by an earlier dup2.
    """
    first = constants.FIRST_INJECTED_FD
    floor = first + len(fds)

    def remap() -> None:
        staged = [fcntl.fcntl(fd, fcntl.F_DUPFD_CLOEXEC, floor) for fd in fds]
        for index, fd in enumerate(staged):
            os.dup2(fd, first + index, inheritable=True)

    return remap


def exit_error(label: str, returncode: int) -> ProcessExitError | None:
    """Completion value for an exit status (None on clean exit)."""
    if returncode == 0:
        return None
    if returncode < 0:
        try:
            signal_name = signal.Signals(-returncode).name
        except ValueError:
            signal_name = f"signal {-returncode}"
        return ProcessExitError(f"{label} killed by {signal_name}", returncode, signal_name, {"label": label})
    return ProcessExitError(f"{label} exited with status {returncode}", returncode, context={"label": label})


class ManagedProcess:
    """One supervised OS process.

    Attributes:
        argv: Argument vector the process was started with
        label: Source label for logs ("qemu", "virtiofsd-0", ...)
        completion: Receives exactly one value when the process exits
            (other writers may get there first, see CompletionSignal)
        kill_requested: Set when the driver itself killed the process
    """

    def __init__(
        self,
        proc: ProcessWrapper,
        argv: Sequence[str],
        label: str,
        log_sink: LogSink,
    ) -> None:
        self.proc = proc
        self.argv = tuple(argv)
        self.label = label
        self.completion = CompletionSignal(label)
        self.kill_requested = False
        self._pump_task = asyncio.create_task(
            drain_subprocess_output(proc, label=label, log_sink=log_sink),
            name=f"{label}-output",
        )
        self._pump_task.add_done_callback(log_task_exception)
        self._exit_task: asyncio.Task[ProcessExitError | None] = asyncio.create_task(
            self._wait_exit(), name=f"{label}-exit"
        )

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        *,
        label: str,
        log_sink: LogSink = default_log_sink,
        injected: InjectedFiles | None = None,
    ) -> ManagedProcess:
        """Start ``argv`` with piped output and injected descriptors.

        Injected descriptors are closed in the parent as soon as the child
        exists (or the spawn failed); the child keeps its own copies.

        Raises:
            StartupError: Executable missing or the OS refused to start it
        """
        fds = list(injected.fds) if injected is not None else []
        try:
            if shutil.which(argv[0]) is None:
                raise StartupError(f"{label}: executable not found: {argv[0]}", context={"label": label})
            kwargs: dict[str, Any] = {}
            if fds:
                # Injected descriptors are remapped by preexec_fn; close_fds
                # would close them again before exec.
                kwargs = {"preexec_fn": _fd_remapper(fds), "close_fds": False}
            try:
                async_proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,  # Ctrl-C at the terminal must not reach QEMU
                    **kwargs,
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise StartupError(f"{label}: failed to start: {e}", context={"label": label, "argv": list(argv)}) from e
        finally:
            if injected is not None:
                injected.close()

        process = cls(ProcessWrapper(async_proc), argv, label, log_sink)
        logger.debug(
            "Started process",
            extra={"label": label, "pid": async_proc.pid, "injected_fds": len(fds)},
        )
        return process

    async def _wait_exit(self) -> ProcessExitError | None:
        returncode = await self.proc.wait()
        # Let the pump flush the last lines before reporting
        done, _ = await asyncio.wait({self._pump_task}, timeout=constants.PUMP_DRAIN_SECONDS)
        if not done:
            self._pump_task.cancel()
        error = exit_error(self.label, returncode)
        if error is None:
            logger.debug("Process exited cleanly", extra={"label": self.label, "pid": self.pid})
        else:
            logger.debug(
                "Process exited with error",
                extra={"label": self.label, "pid": self.pid, "returncode": returncode},
            )
        self.completion.set(error)
        return error

    @property
    def pid(self) -> int | None:
        return self.proc.pid

    @property
    def exited(self) -> bool:
        """True once the exit status has been collected."""
        return self._exit_task.done()

    @property
    def exit_task(self) -> asyncio.Task[ProcessExitError | None]:
        return self._exit_task

    async def wait(self) -> ProcessExitError | None:
        """Wait for this process's own exit and return its exit error.

        Unaffected by other writers to ``completion``.  Cancelling the
        caller does not cancel the exit-wait task.
        """
        return await asyncio.shield(self._exit_task)

    async def kill(self) -> None:
        """Send SIGKILL; an already-exited process counts as success."""
        self.kill_requested = True
        if self.proc.returncode is not None:
            return
        try:
            await self.proc.kill()
        except ProcessLookupError:
            logger.debug("Process already gone at kill", extra={"label": self.label, "pid": self.pid})

