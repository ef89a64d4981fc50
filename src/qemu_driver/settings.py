"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from qemu_driver import constants
from qemu_driver.platform_utils import get_data_dir


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with QEMU_DRIVER_ prefix.
    Example: QEMU_DRIVER_SHUTDOWN_GRACE_SECONDS=30
    """

    model_config = SettingsConfigDict(
        env_prefix="QEMU_DRIVER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Binaries
    qemu_bin_x86: Path = Path("qemu-system-x86_64")
    qemu_bin_arm: Path = Path("qemu-system-aarch64")
    qemu_img_bin: Path = Path("qemu-img")
    virtiofsd_bin: Path | None = None
    """Explicit virtiofsd path. When unset, searched next to QEMU and in distro locations."""

    # Usernet segments live under <networks_dir>/<name>/
    networks_dir: Path = Field(default_factory=lambda: get_data_dir() / "networks")

    # Sidecar readiness
    sidecar_ready_attempts: int = Field(default=constants.SIDECAR_READY_ATTEMPTS, ge=1)
    sidecar_ready_interval_seconds: float = Field(default=constants.SIDECAR_READY_INTERVAL_SECONDS, gt=0)

    # Control protocol
    control_socket_wait_seconds: float = Field(default=constants.CONTROL_SOCKET_WAIT_SECONDS, ge=0)
    control_connect_timeout_seconds: float = Field(default=constants.CONTROL_CONNECT_TIMEOUT_SECONDS, gt=0)

    # Shutdown
    shutdown_grace_seconds: float = Field(default=constants.SHUTDOWN_GRACE_SECONDS, ge=0)
    kill_wait_seconds: float = Field(default=constants.KILL_WAIT_SECONDS, gt=0)

    # Usernet
    usernet_lease_timeout_seconds: float = Field(default=constants.USERNET_LEASE_TIMEOUT_SECONDS, gt=0)
    usernet_request_timeout_seconds: float = Field(default=constants.USERNET_REQUEST_TIMEOUT_SECONDS, gt=0)

    # Testing/Debug
    force_emulation: bool = False
    """Force TCG instead of KVM/HVF."""
