"""Shared pytest fixtures for qemu-driver tests.

No real QEMU or virtiofsd is needed: small Python scripts stand in for both
binaries (same command line, same files created), and the QMP seam is
replaced by FakeControl.  Unix sockets are real.
"""

from __future__ import annotations

import os
import shutil
import signal
import socket
import sys
import tempfile
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any

import pytest

from qemu_driver.config import InstanceConfig
from qemu_driver.exceptions import ControlProtocolError
from qemu_driver.settings import Settings

# ============================================================================
# Fake binaries
# ============================================================================

# Stand-in for qemu-system-*.  Creates the QMP socket path and the pidfile,
# records which descriptors >= 3 are sockets, then behaves per MODE:
#   graceful - exit 0 on SIGTERM (what system_powerdown leads to)
#   stubborn - ignore SIGTERM, only SIGKILL ends it
#   crash    - exit 3 right away
#   exit0    - exit 0 right away
_FAKE_QEMU = """#!{python}
import json, os, signal, stat, sys, time

MODE = {mode!r}
args = sys.argv[1:]

def opt(name):
    for i, a in enumerate(args[:-1]):
        if a == name:
            return args[i + 1]
    return None

def is_socket(fd):
    try:
        return stat.S_ISSOCK(os.fstat(fd).st_mode)
    except OSError:
        return False

if MODE == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
else:
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

pidfile = opt("-pidfile")
instance_dir = os.path.dirname(pidfile)
with open(os.path.join(instance_dir, "fake-qemu.json"), "w") as f:
    json.dump({{"argv": args, "socket_fds": [fd for fd in range(3, 32) if is_socket(fd)]}}, f)
with open(pidfile, "w") as f:
    f.write(str(os.getpid()))
qmp = opt("-qmp")
open(qmp.split(":", 1)[1].split(",")[0], "w").close()
print("fake qemu running", flush=True)

if MODE == "crash":
    print("qemu: fatal: boom", file=sys.stderr, flush=True)
    sys.exit(3)
if MODE == "exit0":
    sys.exit(0)
while True:
    time.sleep(0.05)
"""

# Stand-in for virtiofsd.  Appends its socket path to virtiofsd-order.log
# (next to the socket), then per MODE:
#   ok   - create the vhost-user socket path after DELAY seconds and stay up
#   die  - exit 1 without creating it
#   hang - stay up without creating it
_FAKE_VIRTIOFSD = """#!{python}
import os, sys, time

MODE = {mode!r}
DELAY = {delay!r}
args = sys.argv[1:]
sock = args[args.index("--socket-path") + 1]
with open(os.path.join(os.path.dirname(sock), "virtiofsd-order.log"), "a") as f:
    f.write(sock + "\\n")

if MODE == "die":
    print("virtiofsd: failed to open shared directory", file=sys.stderr, flush=True)
    sys.exit(1)
time.sleep(DELAY)
if MODE == "ok":
    open(sock, "w").close()
    print("virtiofsd: waiting for vhost-user socket connection", flush=True)
while True:
    time.sleep(0.05)
"""

SNAPSHOT_TABLE = """Snapshot list:
ID        TAG               VM SIZE                DATE     VM CLOCK     ICOUNT
1         before-upgrade    412 MiB 2026-01-05 10:11:12 00:01:02.345          0
2         clean             398 MiB 2026-01-06 09:00:00 00:00:30.000          0
"""

# Stand-in for qemu-img.  Appends its argv to qemu-img-calls.jsonl next to the
# disk, prints SNAPSHOT_TABLE for "snapshot -l" and fails for the tag "broken".
_FAKE_QEMU_IMG = """#!{python}
import json, os, sys
args = sys.argv[1:]
disk = args[-1]
with open(os.path.join(os.path.dirname(disk), "qemu-img-calls.jsonl"), "a") as f:
    f.write(json.dumps(args) + "\\n")
if "broken" in args:
    print("qemu-img: Could not find snapshot 'broken'", file=sys.stderr)
    sys.exit(1)
if args[:2] == ["snapshot", "-l"]:
    sys.stdout.write({table!r})
"""


def write_script(path: Path, text: str) -> Path:
    path.write_text(text)
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_qemu(tmp_path: Path):
    """Factory: ``fake_qemu(mode)`` → path of a fake QEMU binary."""

    def make(mode: str = "graceful") -> Path:
        return write_script(tmp_path / f"fake-qemu-{mode}", _FAKE_QEMU.format(python=sys.executable, mode=mode))

    return make


@pytest.fixture
def fake_virtiofsd(tmp_path: Path):
    """Factory: ``fake_virtiofsd(mode, delay)`` → path of a fake virtiofsd binary."""

    def make(mode: str = "ok", delay: float = 0.0) -> Path:
        name = f"fake-virtiofsd-{mode}-{delay}"
        return write_script(tmp_path / name, _FAKE_VIRTIOFSD.format(python=sys.executable, mode=mode, delay=delay))

    return make


@pytest.fixture
def fake_qemu_img(tmp_path: Path) -> Path:
    return write_script(tmp_path / "fake-qemu-img", _FAKE_QEMU_IMG.format(python=sys.executable, table=SNAPSHOT_TABLE))


# ============================================================================
# Paths and sockets
# ============================================================================


@pytest.fixture
def short_tmp() -> Iterator[Path]:
    """Short directory for unix sockets (sun_path is limited to ~104 bytes)."""
    path = Path(tempfile.mkdtemp(prefix="qd-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def unix_listener():
    """Factory: ``unix_listener(path)`` binds a listening unix socket.

    Connections complete against the backlog; nothing ever accepts.
    """
    listeners: list[socket.socket] = []

    def make(path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(str(path))
        sock.listen(16)
        listeners.append(sock)
        return path

    yield make
    for sock in listeners:
        sock.close()


@pytest.fixture
def instance_dir(tmp_path: Path) -> Path:
    path = tmp_path / "instance"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, short_tmp: Path) -> Settings:
    """Settings with short timeouts; binaries are filled in per test."""
    return Settings(
        networks_dir=short_tmp / "networks",
        qemu_img_bin=tmp_path / "no-such-qemu-img",
        sidecar_ready_attempts=25,
        sidecar_ready_interval_seconds=0.2,
        control_socket_wait_seconds=2.0,
        control_connect_timeout_seconds=1.0,
        shutdown_grace_seconds=5.0,
        kill_wait_seconds=5.0,
        usernet_lease_timeout_seconds=2.0,
        usernet_request_timeout_seconds=2.0,
        force_emulation=True,
    )


def make_config(instance_dir: Path, **overrides: Any) -> InstanceConfig:
    values: dict[str, Any] = {"name": "test", "instance_dir": instance_dir, "cpus": 1, "memory_mib": 256}
    values.update(overrides)
    return InstanceConfig(**values)


# ============================================================================
# Control protocol fakes
# ============================================================================


class FakeSession:
    """ControlSession recording commands into its FakeControl."""

    def __init__(self, control: FakeControl, socket_path: Path) -> None:
        self.control = control
        self.socket_path = socket_path

    async def execute(self, command: str, arguments: Mapping[str, Any] | None = None) -> Any:
        self.control.commands.append((command, dict(arguments or {})))
        if command in self.control.fail_commands:
            raise ControlProtocolError(f"QMP command {command} failed: injected", {"command": command})
        if command == "system_powerdown" and self.control.on_powerdown is not None:
            self.control.on_powerdown()
        elif command == "system_powerdown" and self.control.powerdown_signals:
            # QEMU's ACPI power-down ends in a clean exit; the fake QEMU maps SIGTERM to that
            pid = int((self.socket_path.parent / "qemu.pid").read_text())
            os.kill(pid, signal.SIGTERM)
        return self.control.replies.get(command)

    async def close(self) -> None:
        self.control.closed += 1


class FakeControl:
    """SessionFactory double: ``FakeControl().open`` is passed as session_factory."""

    def __init__(
        self,
        *,
        fail_open: bool = False,
        fail_commands: tuple[str, ...] = (),
        replies: dict[str, Any] | None = None,
        powerdown_signals: bool = True,
        on_powerdown: Callable[[], None] | None = None,
    ) -> None:
        self.fail_open = fail_open
        self.fail_commands = fail_commands
        self.replies = replies or {}
        self.powerdown_signals = powerdown_signals
        self.on_powerdown = on_powerdown
        self.opened: list[Path] = []
        self.commands: list[tuple[str, dict[str, Any]]] = []
        self.closed = 0

    async def open(self, socket_path: Path, timeout: float) -> FakeSession:
        self.opened.append(socket_path)
        if self.fail_open:
            raise ControlProtocolError("QMP connection failed: injected", {"socket": str(socket_path)})
        return FakeSession(self, socket_path)

    @property
    def command_names(self) -> list[str]:
        return [name for name, _ in self.commands]


@pytest.fixture
def fake_control() -> FakeControl:
    return FakeControl()


class FakeUsernet:
    """UsernetClient double recording calls."""

    def __init__(self, *, fail_configure: Exception | None = None) -> None:
        self.fail_configure = fail_configure
        self.configured: list[tuple[str, int]] = []
        self.released: list[int] = []

    async def configure_guest(self, mac: str, ssh_port: int) -> str:
        self.configured.append((mac, ssh_port))
        if self.fail_configure is not None:
            raise self.fail_configure
        return "192.168.5.15"

    async def release_ssh(self, ssh_port: int) -> None:
        self.released.append(ssh_port)


skip_unless_linux = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="virtiofs needs a Linux host")
