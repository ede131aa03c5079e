# backend/tests/unit/test_task_poller.py
"""Unit tests for the hypervisor task and readiness pollers."""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from vibespace.schemas.proxmox import LxcStatus, NetworkInterface, TaskStatus
from vibespace.services.errors import (
    ContainerStateError,
    PollTimeoutError,
    ProxmoxAPIError,
    RemoteTaskFailure,
    TransientFetchError,
)
from vibespace.services.task_poller import (
    _usable_ipv4,
    poll_task_until_complete,
    wait_for_container_ip,
    wait_for_container_running,
)

RUNNING = TaskStatus(status="running")
OK = TaskStatus(status="stopped", exitstatus="OK")


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("vibespace.services.task_poller.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class _Clock:
    """Deterministic time.monotonic replacement advancing per call."""

    def __init__(self, step):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class TestPollTaskUntilComplete:
    """Tests for task completion polling."""

    @pytest.mark.asyncio
    async def test_resolves_after_third_poll(self):
        client = MagicMock()
        client.get_task_status = AsyncMock(side_effect=[RUNNING, RUNNING, OK])

        await poll_task_until_complete(client, "UPID:1", interval=0)

        assert client.get_task_status.await_count == 3

    @pytest.mark.asyncio
    async def test_failed_exit_raises_immediately(self):
        """A stopped task with a non-OK exit status fails without further polling."""
        client = MagicMock()
        client.get_task_status = AsyncMock(return_value=TaskStatus(status="stopped", exitstatus="ERROR"))

        with pytest.raises(RemoteTaskFailure) as exc:
            await poll_task_until_complete(client, "UPID:1", interval=0)

        assert exc.value.exitstatus == "ERROR"
        assert client.get_task_status.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_exit_status_is_failure(self):
        client = MagicMock()
        client.get_task_status = AsyncMock(return_value=TaskStatus(status="stopped", exitstatus=""))
        with pytest.raises(RemoteTaskFailure):
            await poll_task_until_complete(client, "UPID:1", interval=0)

    @pytest.mark.asyncio
    async def test_fetch_errors_are_retried(self):
        client = MagicMock()
        client.get_task_status = AsyncMock(side_effect=[ProxmoxAPIError("blip"), RUNNING, OK])
        await poll_task_until_complete(client, "UPID:1", interval=0)
        assert client.get_task_status.await_count == 3

    @pytest.mark.asyncio
    async def test_timeout_while_running(self):
        client = MagicMock()
        client.get_task_status = AsyncMock(return_value=RUNNING)
        with patch("vibespace.services.task_poller.time", new=MagicMock(monotonic=_Clock(step=1.0))):
            with pytest.raises(PollTimeoutError) as exc:
                await poll_task_until_complete(client, "UPID:1", timeout=5, interval=0)
        assert not isinstance(exc.value, TransientFetchError)
        assert "UPID:1" in str(exc.value)
        assert isinstance(exc.value, TimeoutError)

    @pytest.mark.asyncio
    async def test_persistent_fetch_error_surfaces(self):
        client = MagicMock()
        client.get_task_status = AsyncMock(side_effect=ProxmoxAPIError("unreachable"))
        with patch("vibespace.services.task_poller.time", new=MagicMock(monotonic=_Clock(step=1.0))):
            with pytest.raises(TransientFetchError) as exc:
                await poll_task_until_complete(client, "UPID:1", timeout=3, interval=0)
        assert "unreachable" in str(exc.value)

    @pytest.mark.asyncio
    async def test_progress_callback(self):
        client = MagicMock()
        client.get_task_status = AsyncMock(side_effect=[RUNNING, OK])
        seen = []
        await poll_task_until_complete(client, "UPID:1", interval=0, on_progress=seen.append)
        assert seen == ["running", "stopped"]


class TestWaitForContainerRunning:
    """Tests for the running-state waiter."""

    @pytest.mark.asyncio
    async def test_running(self):
        client = MagicMock()
        client.get_lxc_status = AsyncMock(side_effect=[LxcStatus(status="starting"), LxcStatus(status="running")])
        await wait_for_container_running(client, 500, interval=0)
        assert client.get_lxc_status.await_count == 2

    @pytest.mark.asyncio
    async def test_stopped_fails_fast(self):
        client = MagicMock()
        client.get_lxc_status = AsyncMock(return_value=LxcStatus(status="stopped"))
        with pytest.raises(ContainerStateError):
            await wait_for_container_running(client, 500, interval=0)
        assert client.get_lxc_status.await_count == 1


class TestWaitForContainerIp:
    """Tests for the network-acquired waiter."""

    @pytest.mark.asyncio
    async def test_interface_address(self):
        client = MagicMock()
        client.get_lxc_interfaces = AsyncMock(return_value=[
            NetworkInterface(name="lo", inet="127.0.0.1/8"),
            NetworkInterface(name="eth0", inet="10.0.0.5/24"),
        ])
        client.get_lxc_config = AsyncMock(return_value={})
        assert await wait_for_container_ip(client, 500, interval=0) == "10.0.0.5"

    @pytest.mark.asyncio
    async def test_static_config_fallback(self):
        """The net0 static address is used when the guest reports nothing."""
        client = MagicMock()
        client.get_lxc_interfaces = AsyncMock(return_value=[])
        client.get_lxc_config = AsyncMock(return_value={"net0": "name=eth0,bridge=vmbr0,ip=192.168.1.20/24,gw=192.168.1.1"})
        assert await wait_for_container_ip(client, 500, interval=0) == "192.168.1.20"

    @pytest.mark.asyncio
    async def test_dhcp_triggered_once(self):
        client = MagicMock()
        client.get_lxc_interfaces = AsyncMock(return_value=[])
        client.get_lxc_config = AsyncMock(return_value={"net0": "ip=dhcp"})
        trigger = AsyncMock(side_effect=RuntimeError("dhclient missing"))

        with patch("vibespace.services.task_poller.time", new=MagicMock(monotonic=_Clock(step=5.0))):
            with pytest.raises(PollTimeoutError):
                await wait_for_container_ip(client, 500, timeout=60, interval=0, dhcp_trigger=trigger)

        trigger.assert_awaited_once_with(500, "eth0")

    @pytest.mark.asyncio
    async def test_dhcp_not_triggered_before_threshold(self):
        client = MagicMock()
        client.get_lxc_interfaces = AsyncMock(side_effect=[[], [NetworkInterface(name="eth0", inet="10.0.0.9/24")]])
        client.get_lxc_config = AsyncMock(return_value={})
        trigger = AsyncMock()
        assert await wait_for_container_ip(client, 500, interval=0, dhcp_trigger=trigger) == "10.0.0.9"
        trigger.assert_not_awaited()


class TestUsableIpv4:
    """Tests for address filtering."""

    def test_strips_prefix(self):
        assert _usable_ipv4("10.1.2.3/16") == "10.1.2.3"

    def test_rejects_loopback_and_garbage(self):
        assert _usable_ipv4("127.0.0.1/8") is None
        assert _usable_ipv4("fe80::1") is None
        assert _usable_ipv4(None) is None
