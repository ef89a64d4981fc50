"""virtiofsd sidecar supervision.

Sidecars start strictly one after another: sidecar N must have created its
vhost-user socket before sidecar N+1 is spawned.  Each readiness wait races
the sidecar's own completion signal against a bounded marker check, so a
sidecar that dies early fails startup within one polling interval instead
of exhausting the budget.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import SidecarExitedError, SidecarTimeoutError
from qemu_driver.process import ManagedProcess
from qemu_driver.subprocess_utils import LogSink, default_log_sink

if TYPE_CHECKING:
    from collections.abc import Sequence

    from qemu_driver.models import SidecarPlan

logger = get_logger(__name__)


class _MarkerMissing(Exception):
    """Readiness marker not present yet (retried)."""


def _watch_after_ready(sidecar: ManagedProcess) -> None:
    """Log an abnormal exit of a ready sidecar; the instance keeps running."""

    def on_exit(task: asyncio.Task) -> None:
        if task.cancelled() or sidecar.kill_requested:
            return
        error = task.exception() or task.result()
        if error is not None:
            logger.error(
                "Sidecar exited after becoming ready",
                extra={"label": sidecar.label, "pid": sidecar.pid, "error": str(error)},
            )

    sidecar.exit_task.add_done_callback(on_exit)


async def wait_for_marker(
    sidecar: ManagedProcess,
    plan: SidecarPlan,
    *,
    attempts: int = constants.SIDECAR_READY_ATTEMPTS,
    interval: float = constants.SIDECAR_READY_INTERVAL_SECONDS,
) -> None:
    """Wait for ``plan.marker`` while watching the sidecar's completion.

    Each attempt checks the marker, then sleeps ``interval`` unless the
    sidecar completes first.

    Raises:
        SidecarExitedError: Sidecar completed before the marker appeared
        SidecarTimeoutError: Marker still absent after ``attempts`` checks
    """
    death_task = asyncio.create_task(sidecar.completion.wait())
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            retry=retry_if_exception_type(_MarkerMissing),
            reraise=False,
        ):
            with attempt:
                if plan.marker.exists():
                    logger.debug("Sidecar ready", extra={"label": plan.label, "marker": str(plan.marker)})
                    return
                # Race: completion against the polling interval, first one wins
                done, _ = await asyncio.wait({death_task}, timeout=interval)
                if death_task in done:
                    raise SidecarExitedError(
                        f"{plan.label} exited before {plan.marker} appeared",
                        ordinal=plan.ordinal,
                        exit_error=death_task.result(),
                        context={"source": str(plan.source)},
                    )
                raise _MarkerMissing
    except RetryError:
        raise SidecarTimeoutError(
            f"{plan.label}: {plan.marker} did not appear after {attempts} checks",
            context={"ordinal": plan.ordinal, "marker": str(plan.marker)},
        ) from None
    finally:
        if not death_task.done():
            death_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await death_task


async def kill_all(sidecars: Sequence[ManagedProcess]) -> None:
    """SIGKILL every sidecar and wait for it to be reaped."""
    for sidecar in sidecars:
        await sidecar.kill()
    for sidecar in sidecars:
        await sidecar.wait()


async def start_sidecars(
    plans: Sequence[SidecarPlan],
    *,
    log_sink: LogSink = default_log_sink,
    ready_attempts: int = constants.SIDECAR_READY_ATTEMPTS,
    ready_interval: float = constants.SIDECAR_READY_INTERVAL_SECONDS,
) -> list[ManagedProcess]:
    """Start one virtiofsd per plan, in order, each confirmed before the next.

    Args:
        plans: Sidecar plans ordered by mount ordinal
        log_sink: Receives sidecar output tagged ``virtiofsd-<i>[stdout|stderr]``
        ready_attempts: Marker checks per sidecar
        ready_interval: Seconds between checks

    Returns:
        Ready sidecars, in plan order

    Raises:
        StartupError: A sidecar failed to spawn, exited early or never
            became ready.  Every sidecar started by this call has been
            killed by then; cancellation behaves the same way.
    """
    started: list[ManagedProcess] = []
    try:
        for plan in plans:
            # Stale socket from a previous run would fake readiness
            plan.marker.unlink(missing_ok=True)
            logger.debug("Starting sidecar", extra={"label": plan.label, "source": str(plan.source)})
            sidecar = await ManagedProcess.spawn(plan.argv, label=plan.label, log_sink=log_sink)
            started.append(sidecar)
            await wait_for_marker(sidecar, plan, attempts=ready_attempts, interval=ready_interval)
            _watch_after_ready(sidecar)
    except BaseException:
        if started:
            logger.debug("Killing sidecars after failed start", extra={"count": len(started)})
            await asyncio.shield(kill_all(started))
        raise

    if started:
        logger.info("Sidecars ready", extra={"count": len(started)})
    return started
