"""Tests for ManagedProcess (spawn, output pump, exit reporting, fd injection)."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from qemu_driver.exceptions import ProcessExitError, StartupError
from qemu_driver.fd_template import apply_fd_templates, fd_connect_expr
from qemu_driver.process import ManagedProcess, exit_error


class LineCollector:
    """LogSink recording (source, line) pairs."""

    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []

    def __call__(self, source: str, line: str) -> None:
        self.lines.append((source, line))

    def from_source(self, source: str) -> list[str]:
        return [line for src, line in self.lines if src == source]


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


# ============================================================================
# Exit status mapping
# ============================================================================


class TestExitError:
    def test_clean(self):
        assert exit_error("qemu", 0) is None

    def test_status(self):
        err = exit_error("qemu", 3)
        assert isinstance(err, ProcessExitError)
        assert err.returncode == 3
        assert err.signal_name == ""
        assert "exited with status 3" in str(err)

    def test_signal(self):
        err = exit_error("qemu", -9)
        assert err is not None
        assert err.signal_name == "SIGKILL"
        assert str(err) == "qemu killed by SIGKILL"


# ============================================================================
# Lifecycle
# ============================================================================


class TestManagedProcess:
    async def test_clean_exit_delivers_none_once(self):
        proc = await ManagedProcess.spawn(_python("pass"), label="child")
        assert await proc.wait() is None
        assert await proc.completion.wait() is None
        assert proc.exited
        assert proc.completion.set(ProcessExitError("late", 1)) is False

    async def test_nonzero_exit(self):
        proc = await ManagedProcess.spawn(_python("import sys; sys.exit(3)"), label="child")
        err = await proc.completion.wait()
        assert isinstance(err, ProcessExitError)
        assert err.returncode == 3

    async def test_kill_reports_sigkill(self):
        proc = await ManagedProcess.spawn(_python("import time; time.sleep(60)"), label="child")
        await proc.kill()
        err = await proc.wait()
        assert isinstance(err, ProcessExitError)
        assert err.signal_name == "SIGKILL"
        assert proc.kill_requested

    async def test_kill_after_exit_is_harmless(self):
        proc = await ManagedProcess.spawn(_python("pass"), label="child")
        await proc.wait()
        await proc.kill()
        assert proc.completion.value() is None

    async def test_output_is_tagged_by_stream(self):
        sink = LineCollector()
        proc = await ManagedProcess.spawn(
            _python("import sys; print('to out'); print('to err', file=sys.stderr)"),
            label="virtiofsd-0",
            log_sink=sink,
        )
        await proc.wait()
        assert sink.from_source("virtiofsd-0[stdout]") == ["to out"]
        assert sink.from_source("virtiofsd-0[stderr]") == ["to err"]

    async def test_missing_executable(self, tmp_path: Path):
        with pytest.raises(StartupError, match="executable not found"):
            await ManagedProcess.spawn([str(tmp_path / "no-such-binary")], label="qemu")


class TestDescriptorInjection:
    """Injected descriptors appear at 3, 4, ... in the child and close in the parent."""

    async def test_child_sees_sockets_at_templated_numbers(self, short_tmp: Path, unix_listener):
        a = unix_listener(short_tmp / "a.sock")
        b = unix_listener(short_tmp / "b.sock")
        templated = apply_fd_templates(
            [
                *_python(
                    "import json, os, stat, sys\n"
                    "def sock(fd):\n"
                    "    try:\n"
                    "        return stat.S_ISSOCK(os.fstat(fd).st_mode)\n"
                    "    except OSError:\n"
                    "        return False\n"
                    "print(json.dumps({'argv': sys.argv[1:], 'fds': [fd for fd in range(3, 32) if sock(fd)]}))\n"
                ),
                f"fd={fd_connect_expr(a)}",
                f"fd={fd_connect_expr(b)}",
            ]
        )
        sink = LineCollector()
        proc = await ManagedProcess.spawn(templated.args, label="qemu", log_sink=sink, injected=templated.files)
        assert templated.files.closed

        assert await proc.wait() is None
        report = json.loads(sink.from_source("qemu[stdout]")[0])
        assert report["argv"] == ["fd=3", "fd=4"]
        assert report["fds"] == [3, 4]

    async def test_failed_spawn_closes_injected(self, short_tmp: Path, unix_listener, tmp_path: Path):
        sock = unix_listener(short_tmp / "s.sock")
        templated = apply_fd_templates([str(tmp_path / "missing-qemu"), f"fd={fd_connect_expr(sock)}"])
        with pytest.raises(StartupError):
            await ManagedProcess.spawn(templated.args, label="qemu", injected=templated.files)
        assert templated.files.closed
