# backend/tests/unit/test_template_manager.py
"""Unit tests for the hypervisor template pipeline."""
import pytest
from unittest.mock import AsyncMock, patch

from vibespace.schemas.proxmox import (
    ApplianceInfo,
    LxcStatus,
    NodeInfo,
    NetworkInterface,
    ProgressEvent,
    StorageContent,
    TaskStatus,
)
from vibespace.services.errors import (
    LifecycleError,
    ProvisioningError,
    ProxmoxAPIError,
    StaleRecordError,
    VibespaceError,
)
from vibespace.services.provisioning_scripts import CLEANUP_SCRIPT, CORE_PROVISIONING_SCRIPT
from vibespace.services.ssh_service import ExecResult, SSHTarget
from vibespace.services.template_manager import TemplateBuildOptions, TemplateManager, template_hostname

DEBIAN = "local:vztmpl/debian-12-standard_12.7-1_amd64.tar.zst"


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("vibespace.services.task_poller.asyncio.sleep", new=AsyncMock()), \
            patch("vibespace.services.template_manager.asyncio.sleep", new=AsyncMock()):
        yield


@pytest.fixture
def build_client(mock_client):
    """Client whose container starts, gets an address, and stops when asked."""
    mock_client.get_lxc_status = AsyncMock(side_effect=[LxcStatus(status="running"), LxcStatus(status="stopped")])
    mock_client.get_lxc_interfaces = AsyncMock(return_value=[NetworkInterface(name="eth0", inet="10.0.0.50/24")])
    mock_client.list_ct_templates = AsyncMock(return_value=[StorageContent(volid=DEBIAN)])
    return mock_client


@pytest.fixture
def manager(build_client, mock_ssh):
    manager = TemplateManager(build_client, mock_ssh)
    with patch.object(manager, "get_ssh_public_key", return_value="ssh-ed25519 AAAA test"):
        yield manager


def _scripts(mock_ssh):
    return [c.args[1] for c in mock_ssh.run_script.call_args_list]


class TestTemplateHostname:
    """Tests for hostname derivation."""

    def test_sanitized(self):
        assert template_hostname("My Template!") == "my-template"

    def test_default(self):
        assert template_hostname(None) == "vibespace-template"
        assert template_hostname("!!!") == "vibespace-template"


class TestCreateFresh:
    """Tests for building a template from an OS appliance."""

    @pytest.mark.asyncio
    async def test_docker_template_enables_nesting(self, manager, build_client, mock_ssh):
        events = []
        result = await manager.create_template(
            600, TemplateBuildOptions(storage="local-lvm", name="dock", tech_stacks=["docker"]),
            on_progress=events.append,
        )

        kwargs = build_client.create_lxc.call_args.kwargs
        assert kwargs["features"] == "nesting=1"
        assert kwargs["ostemplate"] == DEBIAN
        assert kwargs["ssh_public_keys"] == "ssh-ed25519 AAAA test"
        assert kwargs["net0"] == "name=eth0,bridge=vmbr0,ip=dhcp"
        assert kwargs["tags"] == "vibespace;template;docker"
        build_client.convert_to_template.assert_awaited_once_with(600)

        assert result.vmid == 600
        assert not result.staged
        assert _scripts(mock_ssh)[0] == CORE_PROVISIONING_SCRIPT
        assert _scripts(mock_ssh)[-1] == CLEANUP_SCRIPT
        assert all(isinstance(e, ProgressEvent) for e in events)
        assert events[-1].progress == 100
        assert [e.progress for e in events] == sorted(e.progress for e in events)

    @pytest.mark.asyncio
    async def test_plain_template_has_no_features(self, manager, build_client):
        await manager.create_template(600, TemplateBuildOptions(storage="local-lvm", tech_stacks=["nodejs"], vlan_tag=30))
        kwargs = build_client.create_lxc.call_args.kwargs
        assert kwargs["features"] is None
        assert kwargs["net0"].endswith(",tag=30")

    @pytest.mark.asyncio
    async def test_workspace_user_passed_to_scripts(self, manager, mock_ssh):
        await manager.create_template(600, TemplateBuildOptions(storage="s", env_vars={"FOO": "bar"}))
        env = mock_ssh.run_script.call_args_list[0].kwargs["env"]
        assert env == {"FOO": "bar", "WORKSPACE_USER": "vibe"}

    @pytest.mark.asyncio
    async def test_staging_stops_before_conversion(self, manager, build_client):
        result = await manager.create_template(600, TemplateBuildOptions(storage="s", stop_at_staging=True))
        assert result.staged
        assert result.container_ip == "10.0.0.50"
        build_client.convert_to_template.assert_not_awaited()
        build_client.shutdown_lxc.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_script_rolls_back(self, manager, build_client, mock_ssh):
        mock_ssh.run_script = AsyncMock(return_value=ExecResult(1, "", "E: package not found"))

        with pytest.raises(LifecycleError) as exc:
            await manager.create_template(600, TemplateBuildOptions(storage="s"))

        assert exc.value.step == "provision"
        assert isinstance(exc.value.cause, ProvisioningError)
        assert "package not found" in str(exc.value)
        build_client.delete_lxc.assert_awaited_once_with(600, purge=True)

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_not_fatal(self, manager, build_client, mock_ssh):
        mock_ssh.run_script = AsyncMock(side_effect=[ExecResult(0, "", ""), ExecResult(1, "", "oops")])
        await manager.create_template(600, TemplateBuildOptions(storage="s"))
        build_client.convert_to_template.assert_awaited_once_with(600)

    @pytest.mark.asyncio
    async def test_vmid_conflict_does_not_delete(self, manager, build_client):
        """A create rejected for a taken id must not delete the existing container."""
        build_client.create_lxc = AsyncMock(side_effect=ProxmoxAPIError("CT 600 already exists on node 'pve'"))
        with pytest.raises(LifecycleError) as exc:
            await manager.create_template(600, TemplateBuildOptions(storage="s"))
        assert exc.value.step == "create"
        build_client.delete_lxc.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_public_key(self, manager, build_client):
        with patch.object(manager, "get_ssh_public_key", return_value=None):
            with pytest.raises(LifecycleError) as exc:
                await manager.create_template(600, TemplateBuildOptions(storage="s"))
        assert exc.value.step == "ssh-key"
        build_client.create_lxc.assert_not_awaited()


class TestCreateClone:
    """Tests for building a template by cloning a parent."""

    @pytest.mark.asyncio
    async def test_clone_skips_core_script(self, manager, build_client, mock_ssh):
        await manager.create_template(
            601, TemplateBuildOptions(storage="s", parent_vmid=600, tech_stacks=["docker"])
        )

        build_client.clone_lxc.assert_awaited_once()
        assert build_client.clone_lxc.call_args.kwargs["full"] is True
        build_client.set_lxc_config.assert_any_await(601, {"features": "nesting=1"})
        build_client.create_lxc.assert_not_awaited()
        assert CORE_PROVISIONING_SCRIPT not in _scripts(mock_ssh)

    @pytest.mark.asyncio
    async def test_clone_failure_rolls_back(self, manager, build_client):
        build_client.get_task_status = AsyncMock(return_value=TaskStatus(status="stopped", exitstatus="clone failed"))
        with pytest.raises(LifecycleError) as exc:
            await manager.create_template(601, TemplateBuildOptions(storage="s", parent_vmid=600))
        assert exc.value.step == "clone"
        build_client.delete_lxc.assert_awaited_with(601, purge=True)


class TestOsTemplate:
    """Tests for OS appliance resolution."""

    @pytest.mark.asyncio
    async def test_found_locally(self, manager, build_client):
        assert await manager.ensure_os_template() == DEBIAN
        build_client.download_appliance.assert_not_called()

    @pytest.mark.asyncio
    async def test_downloaded_when_missing(self, manager, build_client):
        build_client.list_ct_templates = AsyncMock(side_effect=[[], [StorageContent(volid="local:vztmpl/ubuntu-24.04-standard.tar.zst")]])
        build_client.list_appliances = AsyncMock(return_value=[
            ApplianceInfo(template="debian-12-standard.tar.zst"),
            ApplianceInfo(template="ubuntu-24.04-standard.tar.zst"),
        ])
        build_client.download_appliance = AsyncMock(return_value="UPID:dl")

        assert await manager.ensure_os_template("ubuntu-24.04-standard") == "local:vztmpl/ubuntu-24.04-standard.tar.zst"
        build_client.download_appliance.assert_awaited_once_with("local", "ubuntu-24.04-standard.tar.zst")

    @pytest.mark.asyncio
    async def test_unknown_appliance(self, manager, build_client):
        build_client.list_ct_templates = AsyncMock(return_value=[])
        build_client.list_appliances = AsyncMock(return_value=[ApplianceInfo(template="debian-12-standard.tar.zst")])
        with pytest.raises(VibespaceError):
            await manager.ensure_os_template("plan9")

    @pytest.mark.asyncio
    async def test_full_volid_must_exist(self, manager, build_client):
        build_client.list_all_ct_templates = AsyncMock(return_value=[StorageContent(volid=DEBIAN)])
        assert await manager.ensure_os_template(DEBIAN) == DEBIAN
        with pytest.raises(VibespaceError):
            await manager.ensure_os_template("nfs:vztmpl/missing.tar.zst")


class TestFinalizeAndDelete:
    """Tests for finalize, delete and status."""

    @pytest.mark.asyncio
    async def test_finalize(self, manager, build_client, mock_ssh):
        build_client.get_lxc_status = AsyncMock(return_value=LxcStatus(status="stopped"))
        await manager.finalize_template(600, "10.0.0.50")
        assert _scripts(mock_ssh) == [CLEANUP_SCRIPT]
        build_client.convert_to_template.assert_awaited_once_with(600)

    @pytest.mark.asyncio
    async def test_finalize_falls_back_to_forced_stop(self, manager, build_client):
        build_client.get_lxc_status = AsyncMock(return_value=LxcStatus(status="stopped"))
        build_client.shutdown_lxc = AsyncMock(side_effect=ProxmoxAPIError("timeout"))
        await manager.finalize_template(600)
        build_client.stop_lxc.assert_awaited_once_with(600)

    @pytest.mark.asyncio
    async def test_finalize_failure_names_step(self, manager, build_client):
        build_client.get_lxc_status = AsyncMock(return_value=LxcStatus(status="stopped"))
        build_client.convert_to_template = AsyncMock(side_effect=ProxmoxAPIError("locked"))
        with pytest.raises(LifecycleError) as exc:
            await manager.finalize_template(600)
        assert exc.value.step == "template"

    @pytest.mark.asyncio
    async def test_delete_already_gone(self, manager, build_client):
        build_client.get_lxc_status = AsyncMock(side_effect=ProxmoxAPIError("CT 600 does not exist", status_code=500))
        await manager.delete_container_template(600)
        build_client.delete_lxc.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_running(self, manager, build_client):
        build_client.get_lxc_status = AsyncMock(return_value=LxcStatus(status="running"))
        await manager.delete_container_template(600)
        build_client.stop_lxc.assert_awaited_once_with(600)
        build_client.delete_lxc.assert_awaited_once_with(600, purge=True)

    @pytest.mark.asyncio
    async def test_delete_task_reports_missing(self, manager, build_client):
        build_client.get_lxc_status = AsyncMock(return_value=LxcStatus(status="stopped"))
        build_client.get_task_status = AsyncMock(
            return_value=TaskStatus(status="stopped", exitstatus="CT 600 does not exist")
        )
        await manager.delete_container_template(600)

    @pytest.mark.asyncio
    async def test_status_of_missing_container_is_stale(self, manager, build_client):
        build_client.get_lxc_status = AsyncMock(side_effect=ProxmoxAPIError("not found", status_code=404))
        with pytest.raises(StaleRecordError):
            await manager.get_template_status(600)

    @pytest.mark.asyncio
    async def test_status(self, manager, build_client):
        build_client.get_lxc_status = AsyncMock(return_value=LxcStatus(status="stopped"))
        build_client.get_lxc_config = AsyncMock(return_value={"template": 1})
        info = await manager.get_template_status(600)
        assert info.exists and info.is_template and info.status == "stopped"


class TestSshAccess:
    """Tests for pushing keys through the hypervisor host."""

    @pytest.mark.asyncio
    async def test_pushes_key(self, build_client, mock_ssh):
        host = SSHTarget(host="pve.test")
        manager = TemplateManager(build_client, mock_ssh, host_target=host)
        with patch.object(manager, "get_ssh_public_key", return_value="ssh-ed25519 AAAA"):
            assert await manager.setup_container_ssh_access(600) is True
        mock_ssh.push_authorized_key.assert_awaited_once_with(host, 600, "ssh-ed25519 AAAA")

    @pytest.mark.asyncio
    async def test_without_host(self, manager, mock_ssh):
        assert await manager.setup_container_ssh_access(600) is False
        mock_ssh.push_authorized_key.assert_not_awaited()


class TestApplianceChoice:
    """Tests for picking among several matching appliances."""

    @pytest.mark.asyncio
    async def test_newest_release_downloaded(self, manager, build_client):
        build_client.list_ct_templates = AsyncMock(side_effect=[[], [StorageContent(volid=DEBIAN)]])
        build_client.list_appliances = AsyncMock(return_value=[
            ApplianceInfo(template="debian-12-standard_12.2-1_amd64.tar.zst", version="12.2-1"),
            ApplianceInfo(template="debian-12-standard_12.7-1_amd64.tar.zst", version="12.7-1"),
        ])
        build_client.download_appliance = AsyncMock(return_value="UPID:dl")

        await manager.ensure_os_template()

        build_client.download_appliance.assert_awaited_once_with("local", "debian-12-standard_12.7-1_amd64.tar.zst")


class TestNodes:
    """Tests for node discovery."""

    @pytest.mark.asyncio
    async def test_single_node_selected(self, manager, build_client):
        build_client.get_nodes = AsyncMock(return_value=[NodeInfo(node="pve1")])
        selection = await manager.get_nodes()
        assert selection.node == "pve1"
        assert selection.auto_selected is True

    @pytest.mark.asyncio
    async def test_cluster_not_auto_selected(self, manager, build_client):
        build_client.get_nodes = AsyncMock(return_value=[NodeInfo(node="pve1"), NodeInfo(node="pve2")])
        selection = await manager.get_nodes()
        assert selection.auto_selected is False
        assert selection.all_nodes == ["pve1", "pve2"]
