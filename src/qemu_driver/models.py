"""Value types produced by the driver at runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


@dataclass(frozen=True, slots=True)
class SidecarPlan:
    """One virtiofsd instance serving one mount.

    The marker is the vhost-user socket; virtiofsd creates it once it is
    ready to accept QEMU's connection.
    """

    ordinal: int
    source: Path
    tag: str
    marker: Path
    argv: tuple[str, ...]

    @property
    def label(self) -> str:
        return f"virtiofsd-{self.ordinal}"


@dataclass(frozen=True, slots=True)
class LaunchPlan:
    """Ordered argument vectors for one start.

    ``qemu_argv`` may still contain ``{{ fd_connect "..." }}`` expressions;
    they are resolved by fd_template right before spawn.
    """

    qemu_argv: tuple[str, ...]
    sidecars: tuple[SidecarPlan, ...] = ()


class ShutdownState(str, Enum):
    """Shutdown state machine states."""

    RUNNING = "running"
    POWERDOWN_REQUESTED = "powerdown_requested"
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    FORCE_KILLED = "force_killed"
    CLEANED_UP = "cleaned_up"


VALID_SHUTDOWN_TRANSITIONS: dict[ShutdownState, set[ShutdownState]] = {
    ShutdownState.RUNNING: {ShutdownState.POWERDOWN_REQUESTED, ShutdownState.FORCE_KILLED},
    ShutdownState.POWERDOWN_REQUESTED: {ShutdownState.EXITED, ShutdownState.TIMED_OUT},
    ShutdownState.EXITED: {ShutdownState.CLEANED_UP},
    ShutdownState.TIMED_OUT: {ShutdownState.FORCE_KILLED},
    ShutdownState.FORCE_KILLED: {ShutdownState.CLEANED_UP},
    ShutdownState.CLEANED_UP: set(),
}


@dataclass(frozen=True, slots=True)
class ShutdownResult:
    """Outcome of QemuDriver.stop().

    Attributes:
        forced: True when the hypervisor was SIGKILLed (or already dead)
            instead of powering off on request.
        states: States visited, in order, ending with CLEANED_UP.
        process_error: Terminal error of the hypervisor (None on clean exit).
        degraded: Secondary cleanup failures (sidecar kill, file removal).
    """

    forced: bool
    states: tuple[ShutdownState, ...]
    process_error: BaseException | None = None
    degraded: tuple[BaseException, ...] = field(default_factory=tuple)

    @property
    def final_state(self) -> ShutdownState | None:
        return self.states[-1] if self.states else None


@dataclass(frozen=True, slots=True)
class SnapshotInfo:
    """One row of QEMU's snapshot table (HMP 'info snapshots' / 'qemu-img snapshot -l')."""

    id: str
    tag: str
