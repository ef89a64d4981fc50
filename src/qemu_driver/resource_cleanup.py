"""Resource cleanup utilities for instance shutdown.

Defensive cleanup operations that log errors but don't raise.  Failures
come back as ShutdownDegraded values so the shutdown orchestrator can
aggregate them without masking the hypervisor's own exit error.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import aiofiles.os

from qemu_driver._logging import get_logger
from qemu_driver.exceptions import ShutdownDegraded
from qemu_driver.process import ManagedProcess

logger = get_logger(__name__)


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> ShutdownDegraded | None:
    """Delete file.

    Silently succeeds if the file doesn't exist.

    Args:
        file_path: Path to file to delete (None safe - returns immediately)
        context_id: Instance name for logging
        description: Description for logging (e.g., "VNC password file", "vhost socket")

    Returns:
        None on success, ShutdownDegraded describing the failure otherwise
    """
    if file_path is None:
        return None

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(
            f"{description} deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return None

    except FileNotFoundError:
        # Already gone - success (equivalent to missing_ok=True)
        return None

    except OSError as e:
        # Permission denied, read-only filesystem, etc.
        logger.warning(
            f"{description} could not be removed",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return ShutdownDegraded(
            f"failed to remove {description} {file_path}: {e}",
            {"path": str(file_path)},
        )


async def cleanup_files(
    paths: Sequence[tuple[Path, str]],
    context_id: str,
) -> list[ShutdownDegraded]:
    """Delete every ``(path, description)``; returns the failures."""
    errors: list[ShutdownDegraded] = []
    for path, description in paths:
        error = await cleanup_file(path, context_id, description)
        if error is not None:
            errors.append(error)
    return errors


async def kill_sidecars(
    sidecars: Sequence[ManagedProcess],
    context_id: str,
    wait_timeout: float,
) -> list[ShutdownDegraded]:
    """SIGKILL still-live sidecars and wait (bounded) for them to be reaped.

    Already-exited sidecars count as success.

    Returns:
        One ShutdownDegraded per sidecar that could not be confirmed dead
    """
    errors: list[ShutdownDegraded] = []
    for sidecar in sidecars:
        try:
            await sidecar.kill()
        except OSError as e:
            logger.error(
                "Failed to kill sidecar",
                extra={"context_id": context_id, "label": sidecar.label, "pid": sidecar.pid, "error": str(e)},
            )
            errors.append(
                ShutdownDegraded(f"failed to kill {sidecar.label}: {e}", {"label": sidecar.label, "pid": sidecar.pid})
            )
            continue
        try:
            await sidecar.proc.wait_with_timeout(wait_timeout)
        except TimeoutError:
            logger.error(
                "Sidecar didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "label": sidecar.label, "pid": sidecar.pid},
            )
            errors.append(
                ShutdownDegraded(
                    f"{sidecar.label} still running {wait_timeout}s after SIGKILL",
                    {"label": sidecar.label, "pid": sidecar.pid},
                )
            )
    return errors
