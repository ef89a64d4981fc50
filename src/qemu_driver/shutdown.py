"""Graceful-then-forceful shutdown of a running instance.

State machine::

    RUNNING ──► POWERDOWN_REQUESTED ──► EXITED ────────────► CLEANED_UP
       │                 │                                       ▲
       │                 └──► TIMED_OUT ──► FORCE_KILLED ────────┘
       └──────────────────────────────────► FORCE_KILLED

RUNNING goes straight to FORCE_KILLED when the hypervisor already exited,
the QMP socket cannot be opened, or system_powerdown is rejected.  Cleanup
(transient files, sidecars) runs exactly once on every path.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import ControlProtocolError, DriverError, NetworkBootstrapError, ShutdownFailed
from qemu_driver.models import VALID_SHUTDOWN_TRANSITIONS, ShutdownResult, ShutdownState
from qemu_driver.qemu_cmd import vhost_socket
from qemu_driver.resource_cleanup import cleanup_files, kill_sidecars

if TYPE_CHECKING:
    from collections.abc import Sequence

    from qemu_driver.config import InstanceConfig
    from qemu_driver.exceptions import ShutdownDegraded
    from qemu_driver.process import ManagedProcess
    from qemu_driver.qmp_client import ControlClient
    from qemu_driver.settings import Settings
    from qemu_driver.usernet import UsernetClient

logger = get_logger(__name__)


class ShutdownOrchestrator:
    """Drives one shutdown of one instance.

    Args:
        config: Instance being stopped
        settings: Grace and kill-wait timeouts
        hypervisor: The QEMU process
        sidecars: virtiofsd processes (killed during cleanup)
        control: QMP client for system_powerdown
        usernet: Client of the first usernet segment, if any
    """

    def __init__(
        self,
        config: InstanceConfig,
        settings: Settings,
        hypervisor: ManagedProcess,
        sidecars: Sequence[ManagedProcess],
        control: ControlClient,
        usernet: UsernetClient | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.hypervisor = hypervisor
        self.sidecars = list(sidecars)
        self.control = control
        self.usernet = usernet
        self.state = ShutdownState.RUNNING
        self.states: list[ShutdownState] = [ShutdownState.RUNNING]
        self._cleaned_up = False

    def _transition(self, new_state: ShutdownState) -> None:
        if new_state not in VALID_SHUTDOWN_TRANSITIONS[self.state]:
            raise DriverError(
                f"Invalid shutdown transition: {self.state.value} → {new_state.value}",
                {"instance": self.config.name},
            )
        logger.debug(
            "Shutdown state transition",
            extra={"instance": self.config.name, "from": self.state.value, "to": new_state.value},
        )
        self.state = new_state
        self.states.append(new_state)

    async def run(self) -> ShutdownResult:
        """Stop the hypervisor and clean up.

        Returns:
            ShutdownResult (``forced`` tells which path was taken)

        Raises:
            ShutdownFailed: Hypervisor exit not confirmed even after SIGKILL
        """
        logger.info("Shutting down QEMU with ACPI", extra={"instance": self.config.name})
        await self._release_ssh()

        if self.hypervisor.exited:
            logger.info("QEMU has already exited", extra={"instance": self.config.name})
            return await self._force_kill()

        try:
            # No waiting for the socket here: a missing socket means QEMU never got that far
            async with self.control.session(wait_timeout=0) as session:
                logger.info("Sending QMP system_powerdown command", extra={"instance": self.config.name})
                await session.execute("system_powerdown")
        except ControlProtocolError as e:
            logger.warning(
                "QMP unusable, forcibly killing QEMU",
                extra={"instance": self.config.name, "socket": str(self.control.socket_path), "error": e.message},
            )
            return await self._force_kill()
        self._transition(ShutdownState.POWERDOWN_REQUESTED)

        grace = self.settings.shutdown_grace_seconds
        try:
            process_error = await asyncio.wait_for(self.hypervisor.wait(), timeout=grace)
        except TimeoutError:
            self._transition(ShutdownState.TIMED_OUT)
            logger.warning(
                "QEMU did not exit in %ss, forcibly killing QEMU",
                grace,
                extra={"instance": self.config.name},
            )
            return await self._force_kill()

        self._transition(ShutdownState.EXITED)
        logger.info("QEMU has exited", extra={"instance": self.config.name, "error": str(process_error or "")})
        degraded = await self._cleanup()
        return self._result(forced=False, process_error=process_error, degraded=degraded)

    async def _release_ssh(self) -> None:
        if self.usernet is None:
            return
        try:
            await self.usernet.release_ssh(self.config.ssh_local_port)
        except NetworkBootstrapError as e:
            logger.warning(
                "Failed to remove SSH binding for port %d",
                self.config.ssh_local_port,
                extra={"instance": self.config.name, "error": e.message},
            )

    async def _force_kill(self) -> ShutdownResult:
        self._transition(ShutdownState.FORCE_KILLED)
        wait_error: TimeoutError | None = None
        process_error = None

        if not self.hypervisor.exited:
            await self.hypervisor.kill()
            try:
                process_error = await asyncio.wait_for(self.hypervisor.wait(), timeout=self.settings.kill_wait_seconds)
                logger.info("QEMU has exited, after killing forcibly", extra={"instance": self.config.name})
            except TimeoutError:
                wait_error = TimeoutError(
                    f"QEMU (pid {self.hypervisor.pid}) still running {self.settings.kill_wait_seconds}s after SIGKILL"
                )
        else:
            process_error = self.hypervisor.exit_task.result()

        degraded = await self._cleanup(exit_confirmed=wait_error is None)

        if wait_error is not None:
            logger.error("QEMU exit not confirmed", extra={"instance": self.config.name, "pid": self.hypervisor.pid})
            raise ShutdownFailed(
                str(wait_error),
                errors=[wait_error, *degraded],
                context={"instance": self.config.name, "states": [s.value for s in self.states]},
            )
        return self._result(forced=True, process_error=process_error, degraded=degraded)

    async def _cleanup(self, *, exit_confirmed: bool = True) -> list[ShutdownDegraded]:
        """Remove transient files and kill sidecars; runs once.

        The PID file stays while the hypervisor may still be alive.
        """
        if self._cleaned_up:
            return []
        self._cleaned_up = True

        instance_dir = self.config.instance_dir
        files = [
            (instance_dir / constants.VNC_DISPLAY_FILE, "VNC display file"),
            (instance_dir / constants.VNC_PASSWORD_FILE, "VNC password file"),
        ]
        if exit_confirmed:
            files.append((instance_dir / constants.PID_FILE_NAME, "PID file"))

        degraded = await kill_sidecars(self.sidecars, self.config.name, self.settings.kill_wait_seconds)
        files.extend((vhost_socket(self.config, i), "vhost-user socket") for i in range(len(self.sidecars)))
        degraded.extend(await cleanup_files(files, self.config.name))

        for error in degraded:
            logger.warning("Shutdown degraded: %s", error.message, extra={"instance": self.config.name})
        if exit_confirmed:
            self._transition(ShutdownState.CLEANED_UP)
        return degraded

    def _result(
        self,
        *,
        forced: bool,
        process_error: BaseException | None,
        degraded: list[ShutdownDegraded],
    ) -> ShutdownResult:
        return ShutdownResult(
            forced=forced,
            states=tuple(self.states),
            process_error=process_error,
            degraded=tuple(degraded),
        )
