"""Constants for qemu-driver file layout, protocols and timing defaults."""

from typing import Final

# ============================================================================
# Instance directory layout
# ============================================================================

QMP_SOCKET_NAME: Final[str] = "qmp.sock"
"""QMP control socket created by QEMU inside the instance directory."""

VHOST_SOCKET_TEMPLATE: Final[str] = "virtiofsd-{}.sock"
"""vhost-user socket per virtiofs mount; its appearance marks sidecar readiness."""

PID_FILE_NAME: Final[str] = "qemu.pid"
"""QEMU -pidfile target."""

SERIAL_LOG_NAME: Final[str] = "serial.log"
"""Guest serial console log."""

VNC_DISPLAY_FILE: Final[str] = "vncdisplay"
"""VNC display address written by the host agent; removed at shutdown."""

VNC_PASSWORD_FILE: Final[str] = "vncpassword"
"""VNC password written by the host agent; removed at shutdown."""

DIFF_DISK_NAME: Final[str] = "diffdisk"
"""Writable qcow2 disk (snapshots live here)."""

CIDATA_ISO_NAME: Final[str] = "cidata.iso"
"""cloud-init seed image, attached when present."""

# ============================================================================
# File descriptor injection
# ============================================================================

FIRST_INJECTED_FD: Final[int] = 3
"""First descriptor number after stdin/stdout/stderr."""

FD_CONNECT_FUNCTION: Final[str] = "fd_connect"
"""Name of the only supported argument template function."""

# ============================================================================
# Sidecar readiness
# ============================================================================

SIDECAR_READY_ATTEMPTS: Final[int] = 5
"""Readiness marker checks per sidecar."""

SIDECAR_READY_INTERVAL_SECONDS: Final[float] = 0.2
"""Delay between readiness marker checks (5 x 200ms = ~1s budget)."""

# ============================================================================
# Control protocol
# ============================================================================

CONTROL_SOCKET_WAIT_SECONDS: Final[float] = 30.0
"""How long each control operation waits for the QMP socket to exist."""

CONTROL_SOCKET_POLL_SECONDS: Final[float] = 0.5
"""Polling interval while waiting for the QMP socket."""

CONTROL_CONNECT_TIMEOUT_SECONDS: Final[float] = 5.0
"""QMP connect + handshake timeout."""

QMP_CLIENT_NAME: Final[str] = "qemu-driver"
"""Name passed to qemu.qmp for log correlation."""

NO_SNAPSHOTS_MARKER: Final[str] = "There is no snapshot available"
"""HMP 'info snapshots' output when the image has no snapshots."""

# ============================================================================
# Shutdown
# ============================================================================

SHUTDOWN_GRACE_SECONDS: Final[float] = 180.0
"""Time the guest gets to power off after system_powerdown (3 minutes)."""

KILL_WAIT_SECONDS: Final[float] = 60.0
"""Time to wait for the hypervisor to be reaped after SIGKILL."""

PUMP_DRAIN_SECONDS: Final[float] = 1.0
"""Time to let the output pump flush after process exit."""

# ============================================================================
# Usernet (gvisor-tap-vsock HTTP API over the endpoint socket)
# ============================================================================

USERNET_ENDPOINT_SOCKET_TEMPLATE: Final[str] = "{}_ep.sock"
"""HTTP API socket for a usernet segment."""

USERNET_QEMU_SOCKET_TEMPLATE: Final[str] = "{}_qemu.sock"
"""Data socket QEMU attaches its netdev to."""

USERNET_BASE_URL: Final[str] = "http://usernet"
"""Host part is ignored when connecting over a unix socket."""

USERNET_LEASE_TIMEOUT_SECONDS: Final[float] = 120.0
"""How long to wait for the guest's DHCP lease."""

USERNET_LEASE_POLL_SECONDS: Final[float] = 0.5
"""Lease polling interval."""

USERNET_REQUEST_TIMEOUT_SECONDS: Final[float] = 10.0
"""Per-request HTTP timeout."""

GUEST_SSH_PORT: Final[int] = 22
"""SSH port inside the guest."""

SSH_BIND_HOST: Final[str] = "127.0.0.1"
"""Host address the forwarded SSH port binds to."""

MAC_ADDRESS_PREFIX: Final[str] = "52:55:55"
"""Locally administered OUI for generated guest MAC addresses."""
