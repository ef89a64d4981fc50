"""QMP (QEMU Monitor Protocol) control client.

Every operation is one short-lived session: wait for the QMP socket to
exist, connect, issue exactly one command, disconnect.  No connection is
held between calls, so callers never share a handle.

The wire protocol sits behind a narrow seam: ControlSession (execute one
command, close) plus a SessionFactory that opens one.  QMPSession wraps
the qemu.qmp library; tests plug in fakes at the same seam.

Usage:
    control = ControlClient(config.qmp_socket)
    await control.system_powerdown()
    port = await control.query_vnc()
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any, Protocol

from qemu.qmp import ExecuteError, QMPClient, QMPError  # type: ignore[import-untyped]

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import ControlProtocolError
from qemu_driver.subprocess_utils import wait_for_path

logger = get_logger(__name__)


class ControlSession(Protocol):
    """One open control connection."""

    async def execute(self, command: str, arguments: Mapping[str, Any] | None = None) -> Any: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[Path, float], Awaitable[ControlSession]]
"""``factory(socket_path, connect_timeout)`` returns a connected session."""


class QMPSession:
    """ControlSession backed by qemu.qmp.QMPClient."""

    def __init__(self, socket_path: Path, client: QMPClient) -> None:
        self._socket_path = socket_path
        self._client: QMPClient | None = client

    @classmethod
    async def open(cls, socket_path: Path, timeout: float = constants.CONTROL_CONNECT_TIMEOUT_SECONDS) -> QMPSession:
        """Connect and negotiate capabilities.

        Raises:
            ControlProtocolError: Connection failed or timed out
        """
        client = QMPClient(constants.QMP_CLIENT_NAME)
        try:
            await asyncio.wait_for(client.connect(str(socket_path)), timeout=timeout)
        except TimeoutError as e:
            await _disconnect_quietly(client)
            raise ControlProtocolError(
                f"QMP connection timed out after {timeout}s",
                {"socket": str(socket_path)},
            ) from e
        except (OSError, QMPError) as e:
            await _disconnect_quietly(client)
            raise ControlProtocolError(f"QMP connection failed: {e}", {"socket": str(socket_path)}) from e
        logger.debug("Connected to QMP socket", extra={"socket": str(socket_path)})
        return cls(socket_path, client)

    async def execute(self, command: str, arguments: Mapping[str, Any] | None = None) -> Any:
        if self._client is None:
            raise ControlProtocolError("QMP session closed", {"socket": str(self._socket_path)})
        try:
            return await self._client.execute(command, dict(arguments) if arguments else None)
        except ExecuteError as e:
            raise ControlProtocolError(
                f"QMP command {command} failed: {e}",
                {"command": command, "class": e.error_class},
            ) from e
        except (OSError, QMPError) as e:
            raise ControlProtocolError(f"QMP command {command} failed: {e}", {"command": command}) from e

    async def close(self) -> None:
        """Disconnect; safe to call multiple times."""
        if self._client is not None:
            client, self._client = self._client, None
            await _disconnect_quietly(client)


async def _disconnect_quietly(client: QMPClient) -> None:
    try:
        await client.disconnect()
    except (OSError, QMPError):
        # Peer already gone (e.g. QEMU exiting after system_powerdown)
        logger.debug("QMP disconnect error (ignored)", exc_info=True)


class ControlClient:
    """Per-command QMP sessions against one instance's control socket.

    All failures raise ControlProtocolError and are never fatal to the
    hypervisor process.
    """

    def __init__(
        self,
        socket_path: Path,
        *,
        session_factory: SessionFactory = QMPSession.open,
        socket_wait: float = constants.CONTROL_SOCKET_WAIT_SECONDS,
        poll_interval: float = constants.CONTROL_SOCKET_POLL_SECONDS,
        connect_timeout: float = constants.CONTROL_CONNECT_TIMEOUT_SECONDS,
    ) -> None:
        self.socket_path = socket_path
        self._session_factory = session_factory
        self._socket_wait = socket_wait
        self._poll_interval = poll_interval
        self._connect_timeout = connect_timeout

    @contextlib.asynccontextmanager
    async def session(self, *, wait_timeout: float | None = None) -> AsyncIterator[ControlSession]:
        """Open one session, closed on exit.

        Args:
            wait_timeout: How long to wait for the socket to exist
                (default: the client's socket_wait; 0 checks once)

        Raises:
            ControlProtocolError: Socket absent or connect failed
        """
        wait = self._socket_wait if wait_timeout is None else wait_timeout
        try:
            await wait_for_path(self.socket_path, timeout=wait, poll_interval=self._poll_interval)
        except TimeoutError as e:
            raise ControlProtocolError(
                f"QMP socket {self.socket_path} did not appear within {wait}s",
                {"socket": str(self.socket_path)},
            ) from e

        sess = await self._session_factory(self.socket_path, self._connect_timeout)
        try:
            yield sess
        finally:
            await sess.close()

    async def execute(
        self,
        command: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        wait_timeout: float | None = None,
    ) -> Any:
        """Run one command in its own session."""
        async with self.session(wait_timeout=wait_timeout) as sess:
            logger.debug("QMP command", extra={"command": command, "socket": str(self.socket_path)})
            return await sess.execute(command, arguments)

    async def system_powerdown(self) -> None:
        """Ask the guest to power off (ACPI power button)."""
        await self.execute("system_powerdown")

    async def change_vnc_password(self, password: str) -> None:
        await self.execute("change-vnc-password", {"password": password})

    async def query_vnc(self) -> str:
        """VNC service (port) the display listens on.

        Raises:
            ControlProtocolError: Query failed or VNC is not enabled
        """
        info = await self.execute("query-vnc")
        if not isinstance(info, Mapping) or not info.get("enabled") or "service" not in info:
            raise ControlProtocolError("VNC is not enabled", {"reply": info})
        return str(info["service"])

    async def human_monitor_command(self, command_line: str) -> str:
        """Run an HMP command through QMP and return its text output."""
        result = await self.execute("human-monitor-command", {"command-line": command_line})
        return result if isinstance(result, str) else ""
