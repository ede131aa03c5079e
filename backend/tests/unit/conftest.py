# backend/tests/unit/conftest.py
"""Conftest for unit tests - hypervisor and SSH doubles."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from vibespace.schemas.proxmox import LxcStatus, TaskStatus
from vibespace.services.ssh_service import ExecResult


@pytest.fixture
def mock_client():
    """ProxmoxClient double whose tasks all succeed immediately."""
    client = MagicMock()
    client.node = "pve"
    client.config.vmid_max = 999999
    client.get_task_status = AsyncMock(return_value=TaskStatus(status="stopped", exitstatus="OK"))
    client.get_lxc_status = AsyncMock(return_value=LxcStatus(status="running"))
    client.get_lxc_config = AsyncMock(return_value={})
    client.get_lxc_interfaces = AsyncMock(return_value=[])
    client.list_lxc = AsyncMock(return_value=[])
    for name in ("start_lxc", "stop_lxc", "shutdown_lxc", "delete_lxc", "clone_lxc", "create_lxc", "resize_lxc_disk"):
        setattr(client, name, AsyncMock(return_value=f"UPID:pve:{name}"))
    client.set_lxc_config = AsyncMock(return_value=None)
    client.convert_to_template = AsyncMock(return_value=None)
    return client


@pytest.fixture
def mock_ssh():
    ssh = MagicMock()
    ssh.execute = AsyncMock(return_value=ExecResult(0, "", ""))
    ssh.run_script = AsyncMock(return_value=ExecResult(0, "", ""))
    ssh.wait_for_ssh = AsyncMock(return_value=None)
    ssh.trigger_dhcp = AsyncMock(return_value=None)
    ssh.push_authorized_key = AsyncMock(return_value=None)
    ssh.open_stream = AsyncMock()
    return ssh
