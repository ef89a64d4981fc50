"""Cross-platform OS detection and process management utilities.

Uses psutil's built-in OS detection constants for platform identification.
Provides PID-reuse safe process management wrappers.
"""

import asyncio
import contextlib
import os
import platform
import sys
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (KVM, virtiofsd available)."""

    MACOS = auto()
    """macOS (HVF, no virtiofsd)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


class HostArch(Enum):
    """Host CPU architectures QEMU is launched for."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    """Detect host CPU architecture.

    ``platform.machine()`` reports "arm64" on macOS and "aarch64" on Linux.
    """
    machine = platform.machine().lower()
    if machine in ("arm64", "aarch64"):
        return HostArch.AARCH64
    return HostArch.X86_64


def kvm_available() -> bool:
    """Check that /dev/kvm exists and is read-write accessible."""
    return os.access("/dev/kvm", os.R_OK | os.W_OK)


def get_data_dir() -> Path:
    """Per-user data directory for qemu-driver state.

    - Env: QEMU_DRIVER_DATA_DIR
    - macOS: ~/Library/Application Support/qemu-driver
    - Linux: $XDG_DATA_HOME/qemu-driver or ~/.local/share/qemu-driver
    """
    if env_path := os.environ.get("QEMU_DRIVER_DATA_DIR"):
        return Path(env_path)
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "qemu-driver"
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "qemu-driver"


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID monitoring.
    Protects against PID reuse edge cases where OS recycles PIDs.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Runs the blocking psutil call in a thread so a stuck /proc read
        cannot stall the event loop.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        try:
            running = await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False
        if not running:
            return False
        # Exited but not yet reaped by asyncio
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            return await asyncio.to_thread(self.psutil_proc.status) != psutil.STATUS_ZOMBIE
        return False

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        """Wait for process to complete.

        Returns:
            Process exit code
        """
        return await self.async_proc.wait()

    async def communicate(self) -> tuple[bytes, bytes]:
        """Read stdout/stderr to EOF and wait for exit."""
        return await self.async_proc.communicate()

    @property
    def stdout(self):
        """Process stdout stream."""
        return self.async_proc.stdout

    @property
    def stderr(self):
        """Process stderr stream."""
        return self.async_proc.stderr

    async def kill(self) -> None:
        """Kill process (SIGKILL) without blocking the event loop.

        Raises:
            ProcessLookupError: Process already exited and was reaped
        """
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            self.async_proc.kill()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for process exit with a timeout.

        Pipes are drained by the background pump task, so this only waits.

        Raises:
            TimeoutError: Process did not exit within timeout
        """
        await asyncio.wait_for(self.wait(), timeout=timeout)
        return self.returncode  # type: ignore[return-value]
