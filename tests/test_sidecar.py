"""Tests for sequential virtiofsd sidecar startup."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from qemu_driver.exceptions import SidecarExitedError, SidecarTimeoutError, StartupError
from qemu_driver.models import SidecarPlan
from qemu_driver.sidecar import start_sidecars


def _plans(binaries: list[Path], socket_dir: Path) -> tuple[SidecarPlan, ...]:
    plans = []
    for i, binary in enumerate(binaries):
        marker = socket_dir / f"virtiofsd-{i}.sock"
        plans.append(
            SidecarPlan(
                ordinal=i,
                source=socket_dir,
                tag=f"mount{i}",
                marker=marker,
                argv=(str(binary), "--socket-path", str(marker), "--shared-dir", str(socket_dir)),
            )
        )
    return tuple(plans)


def _start_order(socket_dir: Path) -> list[str]:
    log = socket_dir / "virtiofsd-order.log"
    return log.read_text().splitlines() if log.exists() else []


@pytest.mark.slow
class TestStartSidecars:
    async def test_no_plans(self):
        assert await start_sidecars(()) == []

    async def test_sequential_in_mount_order(self, short_tmp: Path, fake_virtiofsd):
        # Sidecar 0 takes a while to become ready; sidecar 1 must not start before that
        plans = _plans([fake_virtiofsd("ok", 0.4), fake_virtiofsd("ok", 0.0), fake_virtiofsd("ok", 0.0)], short_tmp)

        sidecars = await start_sidecars(plans, ready_attempts=25, ready_interval=0.1)
        try:
            assert [s.label for s in sidecars] == ["virtiofsd-0", "virtiofsd-1", "virtiofsd-2"]
            assert _start_order(short_tmp) == [str(p.marker) for p in plans]
            assert all(p.marker.exists() for p in plans)
            assert not any(s.exited for s in sidecars)
        finally:
            for s in sidecars:
                await s.kill()
                await s.wait()

    async def test_early_death_fails_fast(self, short_tmp: Path, fake_virtiofsd):
        ready_interval = 0.5
        plans = _plans([fake_virtiofsd("die")], short_tmp)

        started = time.monotonic()
        with pytest.raises(SidecarExitedError) as exc_info:
            # 50 x 0.5s budget; a dead sidecar must fail within one interval
            await start_sidecars(plans, ready_attempts=50, ready_interval=ready_interval)
        elapsed = time.monotonic() - started

        assert elapsed < ready_interval + 0.5
        assert exc_info.value.ordinal == 0
        assert exc_info.value.exit_error is not None
        assert isinstance(exc_info.value, StartupError)

    async def test_started_sidecars_killed_on_failure(self, short_tmp: Path, fake_virtiofsd, monkeypatch):
        from qemu_driver import sidecar as sidecar_module

        spawned = []
        real_spawn = sidecar_module.ManagedProcess.spawn

        async def recording_spawn(*args, **kwargs):
            proc = await real_spawn(*args, **kwargs)
            spawned.append(proc)
            return proc

        monkeypatch.setattr(sidecar_module.ManagedProcess, "spawn", recording_spawn)
        plans = _plans([fake_virtiofsd("ok"), fake_virtiofsd("ok"), fake_virtiofsd("die")], short_tmp)

        with pytest.raises(SidecarExitedError):
            await start_sidecars(plans, ready_attempts=25, ready_interval=0.1)

        assert len(spawned) == 3
        assert all(p.exited for p in spawned)
        assert [p.kill_requested for p in spawned] == [True, True, True]
        # Third sidecar never got a chance to start a fourth
        assert len(_start_order(short_tmp)) == 3

    async def test_marker_timeout(self, short_tmp: Path, fake_virtiofsd):
        plans = _plans([fake_virtiofsd("hang")], short_tmp)

        with pytest.raises(SidecarTimeoutError, match="did not appear after 3 checks"):
            await start_sidecars(plans, ready_attempts=3, ready_interval=0.1)
        assert not plans[0].marker.exists()

    async def test_stale_marker_removed_before_start(self, short_tmp: Path, fake_virtiofsd):
        plans = _plans([fake_virtiofsd("hang")], short_tmp)
        plans[0].marker.write_text("")

        with pytest.raises(SidecarTimeoutError):
            await start_sidecars(plans, ready_attempts=2, ready_interval=0.1)

    async def test_cancellation_kills_started_sidecars(self, short_tmp: Path, fake_virtiofsd, monkeypatch):
        from qemu_driver import sidecar as sidecar_module

        spawned = []
        real_spawn = sidecar_module.ManagedProcess.spawn

        async def recording_spawn(*args, **kwargs):
            proc = await real_spawn(*args, **kwargs)
            spawned.append(proc)
            return proc

        monkeypatch.setattr(sidecar_module.ManagedProcess, "spawn", recording_spawn)
        plans = _plans([fake_virtiofsd("hang")], short_tmp)

        task = asyncio.create_task(start_sidecars(plans, ready_attempts=100, ready_interval=0.1))
        for _ in range(100):
            if spawned:
                break
            await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(spawned) == 1
        assert spawned[0].exited
