"""Client for the user-mode network (usernet) endpoint API.

Each usernet segment is served by a gvisor-tap-vsock style daemon exposing
an HTTP API on ``<networks_dir>/<name>/<name>_ep.sock``.  The driver only
needs three calls:

- ``GET  /services/dhcp/leases``       → ``{"<ip>": "<mac>", ...}``
- ``POST /services/forwarder/expose``   → forward a host port to the guest
- ``POST /services/forwarder/unexpose`` → drop that forward
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_fixed

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import NetworkBootstrapError
from qemu_driver.qemu_cmd import segment_mac, usernet_socket

if TYPE_CHECKING:
    from qemu_driver.completion import CompletionSignal
    from qemu_driver.config import InstanceConfig
    from qemu_driver.settings import Settings

logger = get_logger(__name__)


class _LeaseMissing(Exception):
    """Guest has not obtained a DHCP lease yet (retried)."""


class UsernetClient:
    """HTTP over the segment's endpoint unix socket.

    A new connection is made per request; calls are rare (start, stop).
    """

    def __init__(
        self,
        endpoint_socket: Path,
        *,
        request_timeout: float = constants.USERNET_REQUEST_TIMEOUT_SECONDS,
        lease_timeout: float = constants.USERNET_LEASE_TIMEOUT_SECONDS,
        lease_poll_interval: float = constants.USERNET_LEASE_POLL_SECONDS,
    ) -> None:
        self.endpoint_socket = endpoint_socket
        self.request_timeout = request_timeout
        self.lease_timeout = lease_timeout
        self.lease_poll_interval = lease_poll_interval

    @classmethod
    def for_network(cls, settings: Settings, network: str) -> UsernetClient:
        return cls(
            usernet_socket(settings, network, constants.USERNET_ENDPOINT_SOCKET_TEMPLATE),
            request_timeout=settings.usernet_request_timeout_seconds,
            lease_timeout=settings.usernet_lease_timeout_seconds,
        )

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{constants.USERNET_BASE_URL}{path}"
        try:
            async with aiohttp.ClientSession(
                connector=aiohttp.UnixConnector(path=str(self.endpoint_socket)),
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as session:
                async with session.request(method, url, json=payload) as resp:
                    body = await resp.text()
                    if resp.status >= 300:
                        raise NetworkBootstrapError(
                            f"{method} {path} returned {resp.status}: {body.strip()}",
                            {"socket": str(self.endpoint_socket), "status": resp.status},
                        )
                    if not body.strip():
                        return None
                    try:
                        return json.loads(body)
                    except json.JSONDecodeError:
                        return body
        except (aiohttp.ClientError, OSError, TimeoutError) as e:
            raise NetworkBootstrapError(
                f"{method} {path} failed: {e!r}",
                {"socket": str(self.endpoint_socket)},
            ) from e

    async def leases(self) -> dict[str, str]:
        """Current DHCP leases, IP address → MAC address."""
        result = await self._request("GET", "/services/dhcp/leases")
        return result if isinstance(result, dict) else {}

    async def resolve_ip(self, mac: str) -> str:
        """Poll the DHCP leases until ``mac`` has an address.

        Raises:
            NetworkBootstrapError: No lease within lease_timeout, or the API failed
        """
        mac = mac.lower()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.lease_timeout),
                wait=wait_fixed(self.lease_poll_interval),
                retry=retry_if_exception_type(_LeaseMissing),
            ):
                with attempt:
                    for ip, lease_mac in (await self.leases()).items():
                        if str(lease_mac).lower() == mac:
                            return ip
                    raise _LeaseMissing
        except RetryError:
            raise NetworkBootstrapError(
                f"no DHCP lease for {mac} after {self.lease_timeout}s",
                {"mac": mac, "socket": str(self.endpoint_socket)},
            ) from None
        raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")

    async def expose_ssh(self, guest_ip: str, ssh_port: int) -> None:
        await self._request(
            "POST",
            "/services/forwarder/expose",
            {
                "local": f"{constants.SSH_BIND_HOST}:{ssh_port}",
                "remote": f"{guest_ip}:{constants.GUEST_SSH_PORT}",
                "protocol": "tcp",
            },
        )

    async def release_ssh(self, ssh_port: int) -> None:
        """Drop the SSH forward for ``ssh_port``."""
        await self._request(
            "POST",
            "/services/forwarder/unexpose",
            {"local": f"{constants.SSH_BIND_HOST}:{ssh_port}", "protocol": "tcp"},
        )

    async def configure_guest(self, mac: str, ssh_port: int) -> str:
        """Resolve the guest address and forward the SSH port to it.

        Returns:
            Guest IP address
        """
        ip = await self.resolve_ip(mac)
        await self.expose_ssh(ip, ssh_port)
        logger.info(
            "Guest SSH forwarded",
            extra={"guest_ip": ip, "ssh_port": ssh_port, "socket": str(self.endpoint_socket)},
        )
        return ip


async def bootstrap_guest_network(
    client: UsernetClient,
    config: InstanceConfig,
    completion: CompletionSignal,
) -> None:
    """Register the guest with its usernet segment after the hypervisor started.

    Failure is written to the hypervisor's completion signal, never raised.
    """
    nw = config.first_usernet()
    if nw is None:
        return
    mac = segment_mac(config, config.networks.index(nw))
    try:
        await client.configure_guest(mac, config.ssh_local_port)
    except NetworkBootstrapError as e:
        logger.error(
            "Guest network bootstrap failed",
            extra={"instance": config.name, "network": nw.name, "error": e.message},
        )
        completion.set(e)
