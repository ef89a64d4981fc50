"""Argument templating: connect unix sockets and inject their descriptors.

QEMU can attach a netdev (or chardev) to an already-connected socket passed
as an inherited descriptor: ``-netdev socket,id=net0,fd=3``.  The command
builder cannot know descriptor numbers, so it emits an expression instead:

    -netdev socket,id=net0,fd={{ fd_connect "/run/net/user-v2_qemu.sock" }}

apply_fd_templates() resolves each expression in order of appearance:
connect the socket, duplicate its descriptor, close the socket object (the
duplicate stays open), append the duplicate to an accumulator and substitute
``3 + index``.  The child receives the accumulator's descriptors at exactly
those numbers (see process.spawn); the parent closes them right after
spawn.

Only ``fd_connect`` with a single double-quoted string literal is
supported.  Anything else between ``{{`` and ``}}`` is a SetupError.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import socket
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import SetupError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = get_logger(__name__)

_EXPRESSION = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_FD_CONNECT_CALL = re.compile(
    r'^\s*' + re.escape(constants.FD_CONNECT_FUNCTION) + r'\s+("(?:[^"\\]|\\.)*")\s*$',
    re.DOTALL,
)


def fd_connect_expr(path: str | Path) -> str:
    """Render an fd_connect expression for a socket path."""
    return "{{ %s %s }}" % (constants.FD_CONNECT_FUNCTION, json.dumps(str(path)))


@dataclass
class InjectedFiles:
    """Ordered descriptors that must reach the child at 3, 4, 5, ...

    Owned by the parent until spawn; close() is idempotent.
    """

    fds: list[int] = field(default_factory=list)
    closed: bool = False

    def __len__(self) -> int:
        return len(self.fds)

    def next_index(self) -> int:
        """Descriptor number the next appended file will have in the child."""
        return constants.FIRST_INJECTED_FD + len(self.fds)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for fd in self.fds:
            with contextlib.suppress(OSError):
                os.close(fd)


@dataclass(frozen=True)
class TemplatedArgs:
    """Resolved arguments plus the descriptors they reference."""

    args: tuple[str, ...]
    files: InjectedFiles


def _connect_unix(path: str) -> int:
    """Connect to a unix stream socket and return a duplicated descriptor."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(path)
        fd = os.dup(sock.fileno())
    finally:
        sock.close()
    return fd


def _parse_path(expression: str, arg: str) -> str:
    match = _FD_CONNECT_CALL.match(expression)
    if match is None:
        raise SetupError(
            f"Unsupported argument template expression: {{{{{expression}}}}}",
            context={"arg": arg},
        )
    try:
        path = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        raise SetupError(f"Invalid fd_connect argument: {match.group(1)}", context={"arg": arg}) from e
    return path


def _apply_one(arg: str, files: InjectedFiles) -> str:
    if "{{" not in arg:
        return arg

    def substitute(match: re.Match[str]) -> str:
        path = _parse_path(match.group(1), arg)
        index = files.next_index()
        try:
            fd = _connect_unix(path)
        except OSError as e:
            raise SetupError(
                f"fd_connect: failed to connect to {path}: {e}",
                context={"socket": path, "arg": arg},
            ) from e
        files.fds.append(fd)
        logger.debug("Injected socket descriptor", extra={"socket": path, "child_fd": index})
        return str(index)

    resolved = _EXPRESSION.sub(substitute, arg)
    if "{{" in resolved or "}}" in resolved:
        raise SetupError(f"Unterminated argument template: {arg}", context={"arg": arg})
    return resolved


def apply_fd_templates(args: Iterable[str]) -> TemplatedArgs:
    """Resolve every fd_connect expression in ``args``.

    Args:
        args: Argument vector, possibly containing template expressions

    Returns:
        TemplatedArgs with plain arguments and the descriptors to inject

    Raises:
        SetupError: Unsupported expression or socket connect failure.  Every
            descriptor opened so far is closed before raising.
    """
    files = InjectedFiles()
    resolved: list[str] = []
    try:
        for arg in args:
            resolved.append(_apply_one(arg, files))
    except BaseException:
        files.close()
        raise
    return TemplatedArgs(args=tuple(resolved), files=files)
