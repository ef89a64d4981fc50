"""Instance configuration for qemu-driver.

InstanceConfig is supplied once by the caller, already validated against the
instance's YAML by the layer above.  The driver only reads it.

Example:
    ```python
    from pathlib import Path

    from qemu_driver import InstanceConfig, MountConfig, NetworkSegment, QemuDriver

    config = InstanceConfig(
        name="default",
        instance_dir=Path("~/.qemu-driver/default").expanduser(),
        mounts=[MountConfig(location=Path.home(), mount_point=Path.home())],
        networks=[NetworkSegment(name="user-v2", mode="usernet")],
        ssh_local_port=60022,
    )
    driver = QemuDriver(config)
    completion = await driver.start()
    ```
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from qemu_driver import constants
from qemu_driver.platform_utils import detect_host_arch


class MountConfig(BaseModel):
    """Host directory shared with the guest."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    location: Path = Field(description="Host directory")
    mount_point: Path | None = Field(default=None, description="Guest path (defaults to location)")
    writable: bool = False

    @property
    def target(self) -> Path:
        """Guest-side mount point."""
        return self.mount_point if self.mount_point is not None else self.location


class NetworkSegment(BaseModel):
    """Network the guest is attached to.

    ``usernet`` segments are user-mode networks run by the network-mediation
    service; their QEMU data socket and HTTP endpoint are derived from the
    segment name.  ``socket`` segments attach to an existing unix socket
    (e.g. socket_vmnet).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    mode: Literal["usernet", "socket"] = "usernet"
    socket: Path | None = Field(default=None, description="Unix socket for mode='socket'")
    mac_address: str | None = Field(default=None, pattern=r"^([0-9a-fA-F]{2}:){5}[0-9a-fA-F]{2}$")


class InstanceConfig(BaseModel):
    """Immutable, pre-validated description of one VM instance.

    Attributes:
        name: Instance name (QEMU -name, log correlation).
        instance_dir: Directory holding disks, sockets and transient files.
        arch: Guest architecture, defaults to the host's.
        vm_type: Only "qemu" is driven by this package.
        mount_type: How mounts are shared; only virtiofs needs sidecars.
        mounts: Shared host directories, in order.
        networks: Network segments, in order (net0, net1, ...).
        ssh_local_port: Host port forwarded to the guest's SSH port.
        video_display: "none" or "vnc".
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    name: str = Field(min_length=1)
    instance_dir: Path
    arch: Literal["x86_64", "aarch64"] = Field(default_factory=lambda: detect_host_arch().value)
    vm_type: str = "qemu"
    cpus: int = Field(default=4, ge=1)
    memory_mib: int = Field(default=4096, ge=128)
    mount_type: Literal["virtiofs", "9p", "reverse-sshfs"] = "reverse-sshfs"
    mounts: tuple[MountConfig, ...] = ()
    networks: tuple[NetworkSegment, ...] = ()
    ssh_local_port: int = Field(default=0, ge=0, le=65535)
    video_display: Literal["none", "vnc"] = "none"

    def first_usernet(self) -> NetworkSegment | None:
        """First usernet segment, which owns SSH forwarding."""
        return next((nw for nw in self.networks if nw.mode == "usernet"), None)

    @property
    def qmp_socket(self) -> Path:
        """QMP control socket inside the instance directory."""
        return self.instance_dir / constants.QMP_SOCKET_NAME
