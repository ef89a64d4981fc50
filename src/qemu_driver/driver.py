"""QEMU driver: start, stop and control one VM instance.

Start ordering:
    validate → build launch plan → resolve fd_connect templates →
    start sidecars (sequentially, each confirmed) → spawn QEMU with the
    injected descriptors → close them in the parent → schedule the guest
    network bootstrap.

Anything failing before QEMU is spawned leaves no process running and no
descriptor open.  Cancellation is honoured up to the QEMU spawn; once QEMU
runs, only stop() ends it.

Example:
    ```python
    driver = QemuDriver(config)
    completion = await driver.start()
    ...
    result = await driver.stop()
    assert result.final_state is ShutdownState.CLEANED_UP
    ```
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from qemu_driver._logging import get_logger
from qemu_driver.completion import CompletionSignal
from qemu_driver.config import InstanceConfig
from qemu_driver.exceptions import DriverError, ShutdownFailed
from qemu_driver.fd_template import apply_fd_templates
from qemu_driver.models import ShutdownResult, SnapshotInfo
from qemu_driver.process import ManagedProcess
from qemu_driver.qemu_cmd import build_launch_plan, validate_config
from qemu_driver.qmp_client import ControlClient, QMPSession, SessionFactory
from qemu_driver.settings import Settings
from qemu_driver.shutdown import ShutdownOrchestrator
from qemu_driver.sidecar import kill_all, start_sidecars
from qemu_driver.snapshot_manager import SnapshotManager
from qemu_driver.subprocess_utils import LogSink, default_log_sink, log_task_exception
from qemu_driver.usernet import UsernetClient, bootstrap_guest_network

logger = get_logger(__name__)

HYPERVISOR_LABEL = "qemu"

UsernetFactory = Callable[[Settings, str], UsernetClient]


class QemuDriver:
    """Lifecycle driver for one instance.

    All supervision state lives on the instance; two drivers never share
    anything but the paths they are given.

    Args:
        config: Pre-validated instance configuration
        settings: Runtime settings (default: from environment)
        log_sink: Receives child output lines tagged with their source
        session_factory: Opens QMP sessions (replaceable in tests)
        usernet_factory: Builds the usernet client for a segment name
    """

    def __init__(
        self,
        config: InstanceConfig,
        settings: Settings | None = None,
        *,
        log_sink: LogSink = default_log_sink,
        session_factory: SessionFactory = QMPSession.open,
        usernet_factory: UsernetFactory = UsernetClient.for_network,
    ) -> None:
        self.config = config
        self.settings = settings or Settings()
        self.log_sink = log_sink
        self.control = ControlClient(
            config.qmp_socket,
            session_factory=session_factory,
            socket_wait=self.settings.control_socket_wait_seconds,
            connect_timeout=self.settings.control_connect_timeout_seconds,
        )
        self.snapshots = SnapshotManager(config, self.settings, self.control)
        self._usernet_factory = usernet_factory

        self.hypervisor: ManagedProcess | None = None
        self.sidecars: list[ManagedProcess] = []
        self._bootstrap_task: asyncio.Task[None] | None = None
        self._stop_lock = asyncio.Lock()
        self._stop_result: ShutdownResult | None = None
        self._stop_error: ShutdownFailed | None = None

    @property
    def running(self) -> bool:
        """True while the hypervisor process has not exited."""
        return self.hypervisor is not None and not self.hypervisor.exited

    def _usernet(self) -> UsernetClient | None:
        nw = self.config.first_usernet()
        return self._usernet_factory(self.settings, nw.name) if nw is not None else None

    def validate(self) -> None:
        """Check the configuration can run on this host.

        Raises:
            ConfigurationError: Unsupported combination
        """
        validate_config(self.config)

    async def start(self) -> CompletionSignal:
        """Start sidecars and QEMU.

        Returns:
            The hypervisor's completion signal.  It receives exactly one
            value: ``None`` on clean exit, ProcessExitError on a crash, or
            NetworkBootstrapError if registering the guest network failed
            first.

        Raises:
            ConfigurationError: Host cannot run the configuration
            SetupError: A templated socket could not be connected
            StartupError: A sidecar or QEMU failed to start
        """
        if self.hypervisor is not None:
            raise DriverError("Instance already started", {"instance": self.config.name})

        plan = build_launch_plan(self.config, self.settings)
        templated = apply_fd_templates(plan.qemu_argv)

        try:
            sidecars = await start_sidecars(
                plan.sidecars,
                log_sink=self.log_sink,
                ready_attempts=self.settings.sidecar_ready_attempts,
                ready_interval=self.settings.sidecar_ready_interval_seconds,
            )
        except BaseException:
            templated.files.close()
            raise

        try:
            hypervisor = await ManagedProcess.spawn(
                templated.args,
                label=HYPERVISOR_LABEL,
                log_sink=self.log_sink,
                injected=templated.files,
            )
        except BaseException:
            await asyncio.shield(kill_all(sidecars))
            raise

        self.hypervisor = hypervisor
        self.sidecars = sidecars
        logger.info(
            "QEMU started",
            extra={"instance": self.config.name, "pid": hypervisor.pid, "sidecars": len(sidecars)},
        )

        usernet = self._usernet()
        if usernet is not None:
            self._bootstrap_task = asyncio.create_task(
                bootstrap_guest_network(usernet, self.config, hypervisor.completion),
                name=f"{self.config.name}-network-bootstrap",
            )
            self._bootstrap_task.add_done_callback(log_task_exception)
        return hypervisor.completion

    async def stop(self) -> ShutdownResult:
        """Power the VM off, forcibly if needed, and clean up.

        Safe to call repeatedly and concurrently: later calls return the
        first call's result (or re-raise its ShutdownFailed).  Stopping a
        driver that was never started returns an empty result.

        Raises:
            ShutdownFailed: QEMU exit not confirmed even after SIGKILL
        """
        async with self._stop_lock:
            if self._stop_error is not None:
                raise self._stop_error
            if self._stop_result is not None:
                return self._stop_result
            if self.hypervisor is None:
                logger.debug("Stop before start, nothing to do", extra={"instance": self.config.name})
                return ShutdownResult(forced=False, states=())

            if self._bootstrap_task is not None and not self._bootstrap_task.done():
                self._bootstrap_task.cancel()

            orchestrator = ShutdownOrchestrator(
                self.config,
                self.settings,
                self.hypervisor,
                self.sidecars,
                self.control,
                self._usernet(),
            )
            try:
                self._stop_result = await orchestrator.run()
            except ShutdownFailed as e:
                self._stop_error = e
                raise
            return self._stop_result

    async def change_display_password(self, password: str) -> None:
        """Set the VNC password.

        Raises:
            ControlProtocolError: QMP unavailable or command rejected
        """
        await self.control.change_vnc_password(password)

    async def get_display_connection(self) -> str:
        """VNC service (port) of the running display.

        Raises:
            ControlProtocolError: QMP unavailable or VNC disabled
        """
        return await self.control.query_vnc()

    def _running_flag(self, running: bool | None) -> bool:
        return self.running if running is None else running

    async def create_snapshot(self, tag: str, *, running: bool | None = None) -> None:
        await self.snapshots.create(tag, running=self._running_flag(running))

    async def apply_snapshot(self, tag: str, *, running: bool | None = None) -> None:
        await self.snapshots.apply(tag, running=self._running_flag(running))

    async def delete_snapshot(self, tag: str, *, running: bool | None = None) -> None:
        await self.snapshots.delete(tag, running=self._running_flag(running))

    async def list_snapshots(self, *, running: bool | None = None) -> list[SnapshotInfo]:
        """Snapshots in the instance's diffdisk.

        ``running`` defaults to whether this driver's QEMU is alive; pass it
        explicitly when the VM is run by another process.
        """
        return await self.snapshots.list(running=self._running_flag(running))
