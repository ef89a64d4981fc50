"""qemu-driver: lifecycle driver for QEMU virtual machines.

Starts QEMU together with one virtiofsd per shared directory, controls the
running VM over QMP and stops it gracefully (ACPI power-down) with a
forceful fallback.

Quick Start:
    ```python
    from pathlib import Path

    from qemu_driver import InstanceConfig, MountConfig, QemuDriver

    config = InstanceConfig(
        name="default",
        instance_dir=Path("/var/lib/vms/default"),
        mount_type="virtiofs",
        mounts=[MountConfig(location=Path("/srv/share"), writable=True)],
    )
    driver = QemuDriver(config)
    completion = await driver.start()   # sidecars ready, QEMU running
    ...
    result = await driver.stop()        # system_powerdown, SIGKILL after grace
    ```

Observing the VM:
    ``completion.wait()`` returns exactly once: ``None`` when QEMU exits
    cleanly, ProcessExitError when it crashes, or NetworkBootstrapError when
    the guest could not be registered with its usernet segment.

Requirements:
    - QEMU 8.0+ (KVM on Linux, HVF on macOS, TCG elsewhere)
    - virtiofsd for mount_type="virtiofs" (Linux only)
    - Python 3.12+
"""

from qemu_driver.completion import CompletionSignal
from qemu_driver.config import InstanceConfig, MountConfig, NetworkSegment
from qemu_driver.driver import QemuDriver
from qemu_driver.exceptions import (
    ConfigurationError,
    ControlProtocolError,
    DriverError,
    NetworkBootstrapError,
    ProcessExitError,
    RuntimeFailure,
    SetupError,
    ShutdownDegraded,
    ShutdownFailed,
    SidecarExitedError,
    SidecarTimeoutError,
    SnapshotError,
    StartupError,
)
from qemu_driver.models import ShutdownResult, ShutdownState, SnapshotInfo
from qemu_driver.settings import Settings

__all__ = [
    "CompletionSignal",
    "ConfigurationError",
    "ControlProtocolError",
    "DriverError",
    "InstanceConfig",
    "MountConfig",
    "NetworkBootstrapError",
    "NetworkSegment",
    "ProcessExitError",
    "QemuDriver",
    "RuntimeFailure",
    "Settings",
    "SetupError",
    "ShutdownDegraded",
    "ShutdownFailed",
    "ShutdownResult",
    "ShutdownState",
    "SidecarExitedError",
    "SidecarTimeoutError",
    "SnapshotError",
    "SnapshotInfo",
    "StartupError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qemu-driver")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
