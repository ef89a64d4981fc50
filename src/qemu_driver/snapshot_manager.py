"""Snapshot operations on an instance's diffdisk.

A running VM is snapshotted through the monitor (HMP savevm/loadvm/delvm/
info snapshots tunnelled over QMP); a stopped VM through
``qemu-img snapshot`` on the qcow2 image.  Tags are opaque; QEMU itself
decides what happens on duplicates.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.config import InstanceConfig
from qemu_driver.exceptions import ControlProtocolError, SnapshotError
from qemu_driver.models import SnapshotInfo
from qemu_driver.platform_utils import ProcessWrapper
from qemu_driver.qmp_client import ControlClient
from qemu_driver.settings import Settings

logger = get_logger(__name__)

# Minimum columns identifying a row in the snapshot table (ID, TAG)
_MIN_SNAPSHOT_PARTS = 2

_HMP_COMMANDS = {"create": "savevm", "apply": "loadvm", "delete": "delvm"}
_QEMU_IMG_FLAGS = {"create": "-c", "apply": "-a", "delete": "-d"}


def parse_snapshot_table(output: str) -> list[SnapshotInfo]:
    """Parse 'info snapshots' / 'qemu-img snapshot -l' output.

    Both print a header line starting with ``ID`` followed by one row per
    snapshot::

        Snapshot list:
        ID        TAG               VM SIZE                DATE     VM CLOCK     ICOUNT
        1         before-upgrade    0 B 2026-01-05 10:11:12 00:00:00.000          0
    """
    if constants.NO_SNAPSHOTS_MARKER in output:
        return []
    snapshots: list[SnapshotInfo] = []
    in_table = False
    for line in output.splitlines():
        parts = line.split()
        if not parts:
            continue
        if not in_table:
            in_table = parts[0] == "ID"
            continue
        if len(parts) >= _MIN_SNAPSHOT_PARTS:
            snapshots.append(SnapshotInfo(id=parts[0], tag=parts[1]))
    return snapshots


def _hmp_failed(output: str) -> bool:
    # savevm/loadvm/delvm print nothing on success and an error line otherwise
    return "error" in output.lower()


class SnapshotManager:
    """Create, apply, delete and list snapshots of one instance.

    Args:
        config: Instance whose diffdisk is snapshotted
        settings: Supplies the qemu-img binary
        control: QMP client used while the VM runs
    """

    def __init__(self, config: InstanceConfig, settings: Settings, control: ControlClient) -> None:
        self.config = config
        self.settings = settings
        self.control = control

    @property
    def disk(self) -> Path:
        return self.config.instance_dir / constants.DIFF_DISK_NAME

    async def create(self, tag: str, *, running: bool) -> None:
        await self._modify("create", tag, running=running)

    async def apply(self, tag: str, *, running: bool) -> None:
        await self._modify("apply", tag, running=running)

    async def delete(self, tag: str, *, running: bool) -> None:
        await self._modify("delete", tag, running=running)

    async def list(self, *, running: bool) -> list[SnapshotInfo]:
        """List snapshots.

        Raises:
            SnapshotError: Monitor or qemu-img failed
        """
        if running:
            output = await self._hmp("info snapshots", tag=None)
        else:
            output = await self._qemu_img("-l", tag=None)
        return parse_snapshot_table(output)

    async def _modify(self, operation: str, tag: str, *, running: bool) -> None:
        if not tag:
            raise SnapshotError(f"snapshot {operation}: tag must not be empty", {"instance": self.config.name})
        logger.info(
            "Snapshot %s",
            operation,
            extra={"instance": self.config.name, "tag": tag, "running": running},
        )
        if running:
            output = await self._hmp(f"{_HMP_COMMANDS[operation]} {tag}", tag=tag)
            if _hmp_failed(output):
                raise SnapshotError(
                    f"{_HMP_COMMANDS[operation]} failed: {output.strip()}",
                    {"instance": self.config.name, "tag": tag, "response": output},
                )
        else:
            await self._qemu_img(_QEMU_IMG_FLAGS[operation], tag=tag)

    async def _hmp(self, command_line: str, *, tag: str | None) -> str:
        try:
            return await self.control.human_monitor_command(command_line)
        except ControlProtocolError as e:
            raise SnapshotError(
                f"{command_line.split()[0]} failed: {e.message}",
                {"instance": self.config.name, "tag": tag, **e.context},
            ) from e

    async def _qemu_img(self, flag: str, *, tag: str | None) -> str:
        cmd = [str(self.settings.qemu_img_bin), "snapshot", flag]
        if tag is not None:
            cmd.append(tag)
        cmd.append(str(self.disk))
        try:
            proc = ProcessWrapper(
                await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            )
        except OSError as e:
            raise SnapshotError(f"qemu-img failed to start: {e}", {"cmd": cmd}) from e
        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            raise SnapshotError(
                f"qemu-img snapshot {flag} failed: {stderr.decode(errors='replace').strip()}",
                context={"instance": self.config.name, "tag": tag, "returncode": proc.returncode},
            )
        return stdout.decode(errors="replace")
