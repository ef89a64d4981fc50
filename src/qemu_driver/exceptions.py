"""Exception hierarchy for qemu-driver.

All exceptions inherit from DriverError.

Hierarchy:
    DriverError (base)
    ├── ConfigurationError        ← host cannot satisfy config, nothing spawned
    ├── SetupError                ← fd templating / socket connect, nothing spawned
    ├── StartupError              ← a process failed to start or become ready
    │   ├── SidecarExitedError    ← sidecar died before its socket appeared
    │   └── SidecarTimeoutError   ← sidecar socket never appeared
    ├── RuntimeFailure            ← delivered through the completion signal
    │   ├── ProcessExitError      ← process exited non-zero / by signal
    │   └── NetworkBootstrapError ← usernet registration failed after start
    ├── ControlProtocolError      ← QMP socket missing, connect or command failed
    ├── SnapshotError             ← snapshot create/apply/delete/list failed
    ├── ShutdownDegraded          ← secondary cleanup failed (logged only)
    └── ShutdownFailed            ← hypervisor exit not confirmed after SIGKILL

Configuration, setup and startup errors are raised synchronously from
QemuDriver.start() after every process started so far has been killed.
Runtime failures are never raised by start(); they surface once through the
hypervisor's CompletionSignal.
"""

from __future__ import annotations

from typing import Any


class DriverError(Exception):
    """Base exception for all driver errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigurationError(DriverError):
    """Configuration requests something this host cannot provide.

    Raised by the command builder before anything is spawned, e.g. a
    virtiofs mount on a host without virtiofsd.
    """


class SetupError(DriverError):
    """Pre-spawn setup failed.

    Raised when an argument template cannot be parsed or a templated
    unix socket cannot be connected.  No process has been started.
    """


class StartupError(DriverError):
    """A supervised process could not be started or never became ready."""


class SidecarExitedError(StartupError):
    """Sidecar exited before its readiness socket appeared.

    Attributes:
        ordinal: Mount index of the sidecar
        exit_error: Terminal error delivered by the sidecar's completion signal
    """

    def __init__(
        self,
        message: str,
        ordinal: int,
        exit_error: BaseException | None,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"ordinal": ordinal, "exit_error": str(exit_error) if exit_error else None})
        super().__init__(message, ctx)
        self.ordinal = ordinal
        self.exit_error = exit_error


class SidecarTimeoutError(StartupError):
    """Sidecar readiness socket did not appear within the retry budget."""


class RuntimeFailure(DriverError):
    """Failure after the hypervisor started.

    Never raised directly by the driver: instances are delivered through
    the hypervisor's CompletionSignal and the caller decides what to do.
    """


class ProcessExitError(RuntimeFailure):
    """Supervised process exited with a non-zero status or by a signal.

    Attributes:
        returncode: asyncio returncode (negative for signals)
        signal_name: e.g. "SIGKILL", empty when not signal-killed
    """

    def __init__(
        self,
        message: str,
        returncode: int | None,
        signal_name: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"returncode": returncode, "signal": signal_name})
        super().__init__(message, ctx)
        self.returncode = returncode
        self.signal_name = signal_name


class NetworkBootstrapError(RuntimeFailure):
    """Guest network registration with the usernet endpoint failed."""


class ControlProtocolError(DriverError):
    """QMP control socket unavailable or command rejected.

    Never fatal to the hypervisor process; returned to the caller.
    """


class SnapshotError(DriverError):
    """Snapshot operation failed (QMP/HMP or qemu-img)."""


class ShutdownDegraded(DriverError):
    """Secondary cleanup step failed while the hypervisor itself stopped.

    Examples: a virtiofsd sidecar refused SIGKILL, a VNC file could not be
    removed.  Logged and returned in ShutdownResult.degraded, never raised.
    """


class ShutdownFailed(DriverError):
    """Hypervisor exit could not be confirmed, even after SIGKILL.

    Attributes:
        errors: Aggregated errors, primary process error first, followed by
            any degraded cleanup errors
    """

    def __init__(
        self,
        message: str,
        errors: list[BaseException],
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.errors = errors
