"""QEMU and virtiofsd command line builder.

Derives the hypervisor argument vector and one argument vector per
virtiofs mount from an InstanceConfig.  The result is deterministic for a
given config, settings and instance directory contents; nothing is spawned
here and nothing is connected (network sockets are referenced through
fd_connect expressions and resolved later by fd_template).
"""

from __future__ import annotations

import hashlib
import shutil
from pathlib import Path

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.config import InstanceConfig
from qemu_driver.exceptions import ConfigurationError
from qemu_driver.fd_template import fd_connect_expr
from qemu_driver.models import LaunchPlan, SidecarPlan
from qemu_driver.platform_utils import HostArch, HostOS, detect_host_arch, detect_host_os, kvm_available
from qemu_driver.settings import Settings

logger = get_logger(__name__)

# Distro locations virtiofsd is installed to when it is not on PATH.
# QEMU < 8 shipped the C virtiofsd in libexec; the Rust one lands in the same places.
_VIRTIOFSD_SEARCH_DIRS: tuple[Path, ...] = (
    Path("/usr/libexec"),
    Path("/usr/lib/qemu"),
    Path("/usr/lib/virtiofsd"),
    Path("/usr/local/libexec"),
)


def qemu_binary(config: InstanceConfig, settings: Settings) -> Path:
    """QEMU system emulator for the guest architecture."""
    return settings.qemu_bin_arm if config.arch == HostArch.AARCH64.value else settings.qemu_bin_x86


def mac_address(seed: str) -> str:
    """Stable, locally administered MAC address derived from ``seed``.

    Same seed (instance dir + segment index) gives the same MAC across
    restarts, so the usernet DHCP lease is reused.
    """
    digest = hashlib.sha256(seed.encode()).digest()
    return f"{constants.MAC_ADDRESS_PREFIX}:{digest[0]:02x}:{digest[1]:02x}:{digest[2]:02x}"


def usernet_socket(settings: Settings, network: str, template: str) -> Path:
    """Path of a usernet segment socket (endpoint or qemu data socket)."""
    return settings.networks_dir / network / template.format(network)


def segment_mac(config: InstanceConfig, index: int) -> str:
    """MAC address of network segment ``index``."""
    nw = config.networks[index]
    if nw.mac_address:
        return nw.mac_address.lower()
    return mac_address(f"{config.instance_dir}#{index}")


def vhost_socket(config: InstanceConfig, ordinal: int) -> Path:
    """Readiness marker (vhost-user socket) for mount ``ordinal``."""
    return config.instance_dir / constants.VHOST_SOCKET_TEMPLATE.format(ordinal)


def accelerator(config: InstanceConfig, settings: Settings) -> str:
    """Pick kvm/hvf when the guest arch matches a capable host, else TCG."""
    native = config.arch == detect_host_arch().value
    if native and not settings.force_emulation:
        host_os = detect_host_os()
        if host_os == HostOS.LINUX and kvm_available():
            return "kvm"
        if host_os == HostOS.MACOS:
            return "hvf"
    logger.warning(
        "Using TCG software emulation (slow) - KVM/HVF not available",
        extra={"instance": config.name, "arch": config.arch},
    )
    return "tcg"


def validate_config(config: InstanceConfig) -> None:
    """Reject configurations this host cannot run.

    Raises:
        ConfigurationError: Unsupported combination; nothing has been started
    """
    if config.vm_type != "qemu":
        raise ConfigurationError(
            f"vmType {config.vm_type!r} is not driven by the QEMU driver",
            context={"instance": config.name},
        )
    if config.mount_type == "virtiofs" and config.mounts and detect_host_os() != HostOS.LINUX:
        raise ConfigurationError(
            'mountType "virtiofs" requires a Linux host; use "reverse-sshfs" or "9p"',
            context={"instance": config.name, "host_os": detect_host_os().name.lower()},
        )
    for index, nw in enumerate(config.networks):
        if nw.mode == "socket" and nw.socket is None:
            raise ConfigurationError(
                f"network #{index} ({nw.name}) has mode 'socket' but no socket path",
                context={"instance": config.name},
            )


def find_virtiofsd(qemu_bin: Path, settings: Settings) -> Path:
    """Locate the virtiofsd binary.

    Search order: explicit setting, ``../libexec`` next to the QEMU binary,
    distro locations, PATH.

    Raises:
        ConfigurationError: virtiofsd not found
    """
    if settings.virtiofsd_bin is not None:
        if settings.virtiofsd_bin.is_file():
            return settings.virtiofsd_bin
        raise ConfigurationError(
            f"Configured virtiofsd not found: {settings.virtiofsd_bin}",
            context={"virtiofsd_bin": str(settings.virtiofsd_bin)},
        )

    candidates: list[Path] = []
    resolved_qemu = shutil.which(str(qemu_bin))
    if resolved_qemu:
        candidates.append(Path(resolved_qemu).resolve().parent.parent / "libexec" / "virtiofsd")
    candidates.extend(d / "virtiofsd" for d in _VIRTIOFSD_SEARCH_DIRS)

    for candidate in candidates:
        if candidate.is_file():
            return candidate

    on_path = shutil.which("virtiofsd")
    if on_path:
        return Path(on_path)

    raise ConfigurationError(
        "virtiofsd not found; install it or set QEMU_DRIVER_VIRTIOFSD_BIN",
        context={"searched": [str(c) for c in candidates]},
    )


def build_sidecar_plans(config: InstanceConfig, virtiofsd: Path) -> tuple[SidecarPlan, ...]:
    """One virtiofsd invocation per mount (virtiofs mount type only)."""
    if config.mount_type != "virtiofs":
        return ()
    plans: list[SidecarPlan] = []
    for i, mount in enumerate(config.mounts):
        marker = vhost_socket(config, i)
        argv = [
            str(virtiofsd),
            "--socket-path",
            str(marker),
            "--shared-dir",
            str(mount.location.expanduser()),
            "--cache",
            "auto",
        ]
        if not mount.writable:
            argv.append("--readonly")
        plans.append(
            SidecarPlan(
                ordinal=i,
                source=mount.location,
                tag=f"mount{i}",
                marker=marker,
                argv=tuple(argv),
            )
        )
    return tuple(plans)


def build_qemu_args(config: InstanceConfig, settings: Settings, qemu_bin: Path) -> list[str]:  # noqa: PLR0912
    """Build the QEMU argument vector (binary first).

    Network sockets appear as fd_connect expressions.
    """
    accel = accelerator(config, settings)
    is_arm = config.arch == HostArch.AARCH64.value
    instance_dir = config.instance_dir

    args: list[str] = [str(qemu_bin), "-name", f"guest={config.name}"]

    # Machine: q35 (x86_64) / virt (aarch64).  Host CPU passthrough only with
    # hardware acceleration; TCG gets the widest emulated model.
    machine = "virt" if is_arm else "q35"
    args.extend(["-machine", f"{machine},accel={accel}"])
    args.extend(["-cpu", "host" if accel in ("kvm", "hvf") else "max"])
    args.extend(["-smp", str(config.cpus)])
    args.extend(["-m", f"{config.memory_mib}M"])

    # virtiofs requires guest RAM to be shareable with the vhost-user backend
    if config.mount_type == "virtiofs" and config.mounts:
        args.extend(
            [
                "-object",
                f"memory-backend-file,id=virtiofs-shm,size={config.memory_mib}M,mem-path=/dev/shm,share=on",
                "-numa",
                "node,memdev=virtiofs-shm",
            ]
        )

    # Disks (created by the disk layer; only referenced here)
    args.extend(["-drive", f"file={instance_dir / constants.DIFF_DISK_NAME},if=virtio,discard=on"])
    cidata = instance_dir / constants.CIDATA_ISO_NAME
    if cidata.exists():
        args.extend(["-cdrom", str(cidata)])
    args.extend(["-boot", "order=c,splash-time=0,menu=on"])

    # Networks: net0..netN attach to pre-existing sockets through injected fds
    if config.networks:
        for i, nw in enumerate(config.networks):
            if nw.mode == "usernet":
                sock = usernet_socket(settings, nw.name, constants.USERNET_QEMU_SOCKET_TEMPLATE)
            else:
                sock = nw.socket  # validated non-None
            args.extend(["-netdev", f"socket,id=net{i},fd={fd_connect_expr(sock)}"])
            args.extend(["-device", f"virtio-net-pci,netdev=net{i},mac={segment_mac(config, i)}"])
    else:
        # No segment configured: QEMU's built-in slirp with SSH forwarding
        args.extend(
            [
                "-netdev",
                f"user,id=net0,hostfwd=tcp:{constants.SSH_BIND_HOST}:{config.ssh_local_port}-:{constants.GUEST_SSH_PORT}",
                "-device",
                f"virtio-net-pci,netdev=net0,mac={mac_address(str(instance_dir))}",
            ]
        )

    # Mounts
    if config.mount_type == "virtiofs":
        for i in range(len(config.mounts)):
            args.extend(
                [
                    "-chardev",
                    f"socket,id=char-virtiofs-{i},path={vhost_socket(config, i)}",
                    "-device",
                    f"vhost-user-fs-pci,queue-size=1024,chardev=char-virtiofs-{i},tag=mount{i}",
                ]
            )
    elif config.mount_type == "9p":
        for i, mount in enumerate(config.mounts):
            virtfs = f"local,path={mount.location.expanduser()},mount_tag=mount{i},security_model=none,id=mount{i}"
            if not mount.writable:
                virtfs += ",readonly=on"
            args.extend(["-virtfs", virtfs])

    args.extend(["-device", "virtio-rng-pci"])

    # Display
    if config.video_display == "vnc":
        args.extend(["-vnc", f"{constants.SSH_BIND_HOST}:0,to=9,password=on"])
    else:
        args.extend(["-display", "none"])

    # Serial console, QMP control socket, pidfile
    args.extend(
        [
            "-chardev",
            f"file,id=serial0,path={instance_dir / constants.SERIAL_LOG_NAME}",
            "-serial",
            "chardev:serial0",
            "-qmp",
            f"unix:{config.qmp_socket},server=on,wait=off",
            "-pidfile",
            str(instance_dir / constants.PID_FILE_NAME),
        ]
    )
    return args


def build_launch_plan(config: InstanceConfig, settings: Settings) -> LaunchPlan:
    """Derive every argument vector needed to start ``config``.

    Raises:
        ConfigurationError: Host cannot satisfy the configuration
    """
    validate_config(config)
    qemu_bin = qemu_binary(config, settings)

    sidecars: tuple[SidecarPlan, ...] = ()
    if config.mount_type == "virtiofs" and config.mounts:
        sidecars = build_sidecar_plans(config, find_virtiofsd(qemu_bin, settings))

    qemu_argv = build_qemu_args(config, settings, qemu_bin)
    logger.debug(
        "Built launch plan",
        extra={"instance": config.name, "qemu_argv": qemu_argv, "sidecars": len(sidecars)},
    )
    return LaunchPlan(qemu_argv=tuple(qemu_argv), sidecars=sidecars)
