"""Tests for the shutdown state machine with an in-memory hypervisor."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from qemu_driver.exceptions import DriverError, NetworkBootstrapError, ProcessExitError, ShutdownFailed
from qemu_driver.models import ShutdownState
from qemu_driver.qmp_client import ControlClient
from qemu_driver.settings import Settings
from qemu_driver.shutdown import ShutdownOrchestrator
from tests.conftest import FakeControl, FakeUsernet, make_config

S = ShutdownState


class FakeHypervisor:
    """Stands in for ManagedProcess during shutdown."""

    pid = 4242

    def __init__(self, *, dies_on_kill: bool = True) -> None:
        self.dies_on_kill = dies_on_kill
        self.killed = False
        self.exit_task: asyncio.Future[ProcessExitError | None] = asyncio.get_running_loop().create_future()

    def finish(self, error: ProcessExitError | None = None) -> None:
        if not self.exit_task.done():
            self.exit_task.set_result(error)

    @property
    def exited(self) -> bool:
        return self.exit_task.done()

    async def wait(self) -> ProcessExitError | None:
        return await asyncio.shield(self.exit_task)

    async def kill(self) -> None:
        self.killed = True
        if self.dies_on_kill:
            self.finish(ProcessExitError("qemu killed by SIGKILL", -9, "SIGKILL"))


@pytest.fixture
def fast_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={"shutdown_grace_seconds": 0.3, "kill_wait_seconds": 0.3})


def _orchestrator(
    instance_dir: Path,
    settings: Settings,
    hypervisor: FakeHypervisor,
    control: FakeControl,
    usernet: FakeUsernet | None = None,
    *,
    create_socket: bool = True,
    **config_overrides,
) -> ShutdownOrchestrator:
    config = make_config(instance_dir, **config_overrides)
    if create_socket:
        config.qmp_socket.write_text("")
    client = ControlClient(config.qmp_socket, session_factory=control.open)
    return ShutdownOrchestrator(config, settings, hypervisor, [], client, usernet)  # type: ignore[arg-type]


def _transient_files(instance_dir: Path) -> list[Path]:
    paths = [instance_dir / "vncdisplay", instance_dir / "vncpassword", instance_dir / "qemu.pid"]
    for path in paths:
        path.write_text("x")
    return paths


class TestGracefulPath:
    async def test_powerdown_then_exit(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor()
        control = FakeControl(on_powerdown=hypervisor.finish)
        files = _transient_files(instance_dir)

        result = await _orchestrator(instance_dir, fast_settings, hypervisor, control).run()

        assert result.forced is False
        assert result.states == (S.RUNNING, S.POWERDOWN_REQUESTED, S.EXITED, S.CLEANED_UP)
        assert result.process_error is None
        assert control.command_names == ["system_powerdown"]
        assert not hypervisor.killed
        assert not any(p.exists() for p in files)

    async def test_crash_during_grace_is_reported_not_raised(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor()
        crash = ProcessExitError("qemu exited with status 1", 1)
        control = FakeControl(on_powerdown=lambda: hypervisor.finish(crash))

        result = await _orchestrator(instance_dir, fast_settings, hypervisor, control).run()

        assert result.forced is False
        assert result.process_error is crash


class TestForcedPath:
    async def test_grace_timeout(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor()
        control = FakeControl(on_powerdown=lambda: None)

        result = await _orchestrator(instance_dir, fast_settings, hypervisor, control).run()

        assert result.forced is True
        assert result.states == (S.RUNNING, S.POWERDOWN_REQUESTED, S.TIMED_OUT, S.FORCE_KILLED, S.CLEANED_UP)
        assert hypervisor.killed
        assert isinstance(result.process_error, ProcessExitError)
        assert result.process_error.signal_name == "SIGKILL"

    async def test_control_unavailable(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor()
        files = _transient_files(instance_dir)

        result = await _orchestrator(instance_dir, fast_settings, hypervisor, FakeControl(fail_open=True)).run()

        assert result.forced is True
        assert result.states == (S.RUNNING, S.FORCE_KILLED, S.CLEANED_UP)
        assert not any(p.exists() for p in files)

    async def test_control_socket_absent(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor()
        control = FakeControl()
        files = _transient_files(instance_dir)

        result = await _orchestrator(instance_dir, fast_settings, hypervisor, control, create_socket=False).run()

        assert result.forced is True
        assert result.states == (S.RUNNING, S.FORCE_KILLED, S.CLEANED_UP)
        assert control.opened == []
        assert hypervisor.killed
        assert not any(p.exists() for p in files)

    async def test_powerdown_rejected(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor()
        control = FakeControl(fail_commands=("system_powerdown",))

        result = await _orchestrator(instance_dir, fast_settings, hypervisor, control).run()
        assert result.states == (S.RUNNING, S.FORCE_KILLED, S.CLEANED_UP)

    async def test_already_exited(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor()
        crash = ProcessExitError("qemu exited with status 3", 3)
        hypervisor.finish(crash)
        control = FakeControl()

        result = await _orchestrator(instance_dir, fast_settings, hypervisor, control).run()

        assert result.forced is True
        assert result.states == (S.RUNNING, S.FORCE_KILLED, S.CLEANED_UP)
        assert result.process_error is crash
        assert control.opened == []
        assert not hypervisor.killed

    async def test_exit_not_confirmed_after_kill(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor(dies_on_kill=False)
        files = _transient_files(instance_dir)

        with pytest.raises(ShutdownFailed) as exc_info:
            await _orchestrator(instance_dir, fast_settings, hypervisor, FakeControl(fail_open=True)).run()

        assert isinstance(exc_info.value.errors[0], TimeoutError)
        assert exc_info.value.context["states"] == ["running", "force_killed"]
        vncdisplay, vncpassword, pidfile = files
        assert not vncdisplay.exists()
        assert not vncpassword.exists()
        # QEMU may still be alive: its pidfile stays
        assert pidfile.exists()


class TestSshRelease:
    async def test_released_before_powerdown(self, instance_dir: Path, fast_settings: Settings):
        hypervisor = FakeHypervisor()
        usernet = FakeUsernet()
        control = FakeControl(on_powerdown=hypervisor.finish)

        await _orchestrator(instance_dir, fast_settings, hypervisor, control, usernet, ssh_local_port=60022).run()
        assert usernet.released == [60022]

    async def test_release_failure_does_not_block_shutdown(self, instance_dir: Path, fast_settings: Settings):
        class FailingUsernet(FakeUsernet):
            async def release_ssh(self, ssh_port: int) -> None:
                raise NetworkBootstrapError("endpoint gone")

        hypervisor = FakeHypervisor()
        control = FakeControl(on_powerdown=hypervisor.finish)

        result = await _orchestrator(instance_dir, fast_settings, hypervisor, control, FailingUsernet()).run()
        assert result.final_state is S.CLEANED_UP


class TestTransitions:
    async def test_invalid_transition_rejected(self, instance_dir: Path, fast_settings: Settings):
        orchestrator = _orchestrator(instance_dir, fast_settings, FakeHypervisor(), FakeControl())
        with pytest.raises(DriverError, match="Invalid shutdown transition"):
            orchestrator._transition(S.EXITED)
