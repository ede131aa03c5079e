# backend/vibespace/services/task_poller.py
"""
Polling primitives for asynchronous hypervisor operations.

The hypervisor exposes no completion callbacks, so every waiter here is a
fixed-interval sleep loop bounded by a wall-clock timeout.
"""
import asyncio
import ipaddress
import logging
import re
import time
from typing import Any, Awaitable, Callable, Optional

from vibespace.services.errors import (
    ContainerStateError,
    PollTimeoutError,
    ProxmoxAPIError,
    RemoteTaskFailure,
    TransientFetchError,
)
from vibespace.services.proxmox_client import ProxmoxClient
from vibespace.utils.callbacks import maybe_await

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT = 120
DEFAULT_TASK_INTERVAL = 2
DEFAULT_RUNNING_TIMEOUT = 60
DEFAULT_IP_TIMEOUT = 90
DEFAULT_IP_INTERVAL = 3
DHCP_TRIGGER_AFTER = 15

STATIC_IP_RE = re.compile(r"ip=(\d+\.\d+\.\d+\.\d+)")

DhcpTrigger = Callable[[int, str], Awaitable[Any]]


def _usable_ipv4(value: Optional[str]) -> Optional[str]:
    """Strip a CIDR suffix and reject loopback / malformed addresses."""
    if not value:
        return None
    address = value.split("/", 1)[0]
    try:
        parsed = ipaddress.IPv4Address(address)
    except ValueError:
        return None
    if parsed.is_loopback:
        return None
    return address


async def poll_task_until_complete(
    client: ProxmoxClient,
    upid: str,
    timeout: float = DEFAULT_TASK_TIMEOUT,
    interval: float = DEFAULT_TASK_INTERVAL,
    on_progress: Optional[Callable[[str], Any]] = None,
) -> None:
    """
    Wait for a hypervisor task to stop with exit status "OK".

    A task that stops with any other exit status raises RemoteTaskFailure at
    once. Status fetch failures are retried until the budget runs out and then
    surface as TransientFetchError.

    Args:
        client: Hypervisor client
        upid: Task handle returned by a mutating call
        timeout: Wall-clock budget in seconds
        interval: Seconds between polls
        on_progress: Called with the task status string after every poll
    """
    start = time.monotonic()
    last_error: Optional[Exception] = None

    while True:
        try:
            status = await client.get_task_status(upid)
        except ProxmoxAPIError as e:
            last_error = e
            logger.debug(f"Status fetch for {upid} failed, retrying: {e}")
        else:
            last_error = None
            if on_progress:
                await maybe_await(on_progress(status.status))
            if status.status == "stopped":
                if status.exitstatus == "OK":
                    return
                raise RemoteTaskFailure(upid, status.exitstatus)

        elapsed = time.monotonic() - start
        if elapsed >= timeout:
            if last_error is not None:
                raise TransientFetchError(upid, elapsed, last_error)
            raise PollTimeoutError(upid, elapsed, "task still running")
        await asyncio.sleep(interval)


async def wait_for_container_running(
    client: ProxmoxClient,
    vmid: int,
    timeout: float = DEFAULT_RUNNING_TIMEOUT,
    interval: float = DEFAULT_TASK_INTERVAL,
) -> None:
    """Wait for a container to report ``running``; fail fast on ``stopped``."""
    start = time.monotonic()
    last_error: Optional[Exception] = None

    while True:
        try:
            status = await client.get_lxc_status(vmid)
        except ProxmoxAPIError as e:
            last_error = e
        else:
            last_error = None
            if status.status == "running":
                return
            if status.status == "stopped":
                raise ContainerStateError(f"Container {vmid} stopped while waiting for it to start")

        elapsed = time.monotonic() - start
        if elapsed >= timeout:
            if last_error is not None:
                raise TransientFetchError(f"container {vmid}", elapsed, last_error)
            raise PollTimeoutError(f"container {vmid}", elapsed, "not running")
        await asyncio.sleep(interval)


async def lookup_container_ip(client: ProxmoxClient, vmid: int, interface: str) -> Optional[str]:
    """Guest-reported address first, then the static net0 configuration."""
    for iface in await client.get_lxc_interfaces(vmid):
        if iface.name == interface:
            if ip := _usable_ipv4(iface.inet):
                return ip

    config = await client.get_lxc_config(vmid)
    net0 = config.get("net0")
    if isinstance(net0, str) and (match := STATIC_IP_RE.search(net0)):
        return _usable_ipv4(match.group(1))
    return None


async def wait_for_container_ip(
    client: ProxmoxClient,
    vmid: int,
    timeout: float = DEFAULT_IP_TIMEOUT,
    interval: float = DEFAULT_IP_INTERVAL,
    interface: str = "eth0",
    dhcp_trigger: Optional[DhcpTrigger] = None,
    dhcp_trigger_after: float = DHCP_TRIGGER_AFTER,
) -> str:
    """
    Wait until a container has a non-loopback IPv4 address on ``interface``.

    Once ``dhcp_trigger_after`` seconds have passed without an address,
    ``dhcp_trigger(vmid, interface)`` is invoked a single time, whatever its
    outcome, and polling continues.

    Returns:
        The IPv4 address without prefix length
    """
    start = time.monotonic()
    dhcp_attempted = False
    last_error: Optional[Exception] = None

    while True:
        try:
            ip = await lookup_container_ip(client, vmid, interface)
        except ProxmoxAPIError as e:
            last_error = e
            ip = None
        else:
            last_error = None

        if ip:
            logger.info(f"Container {vmid} has IP {ip}")
            return ip

        elapsed = time.monotonic() - start
        if dhcp_trigger and not dhcp_attempted and elapsed >= dhcp_trigger_after:
            dhcp_attempted = True
            logger.info(f"No IP for container {vmid} after {elapsed:.0f}s, triggering DHCP on {interface}")
            try:
                await dhcp_trigger(vmid, interface)
            except Exception as e:
                logger.warning(f"DHCP trigger for container {vmid} failed: {e}")

        if elapsed >= timeout:
            if last_error is not None:
                raise TransientFetchError(f"IP of container {vmid}", elapsed, last_error)
            raise PollTimeoutError(f"IP of container {vmid}", elapsed, f"no address on {interface}")
        await asyncio.sleep(interval)
