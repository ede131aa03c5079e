# backend/tests/unit/test_proxmox_client.py
"""Unit tests for the Proxmox REST client."""
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from vibespace.schemas.proxmox import LxcSummary
from vibespace.services.errors import ConfigurationError, ProxmoxAPIError, RangeExhaustedError
from vibespace.services.proxmox_client import ProxmoxClient


def _response(data=None, status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.reason_phrase = "OK" if status_code < 400 else "Internal Server Error"
    response.json.return_value = body if body is not None else {"data": data}
    return response


@pytest.fixture
def client(runtime_config):
    client = ProxmoxClient(runtime_config)
    client._http_client = MagicMock()
    client._http_client.request = AsyncMock(return_value=_response())
    return client


class TestConstruction:
    """Tests for client construction."""

    def test_missing_fields_raise(self, runtime_config):
        """Construction fails fast when connection details are incomplete."""
        config = runtime_config.model_copy(update={"token_secret": None, "node": None})
        with pytest.raises(ConfigurationError) as exc:
            ProxmoxClient(config)
        assert "token_secret" in str(exc.value)
        assert "node" in str(exc.value)

    def test_base_url(self, runtime_config):
        client = ProxmoxClient(runtime_config)
        assert client.base_url == "https://pve.test:8006/api2/json"

    @pytest.mark.asyncio
    async def test_http_client_disables_tls_verification(self, runtime_config):
        client = ProxmoxClient(runtime_config)
        http = await client._get_http_client()
        try:
            assert http.headers["Authorization"] == "PVEAPIToken=root@pam!vibespace=token-secret"
        finally:
            await client.close()
        assert client._http_client is None


class TestRequests:
    """Tests for request encoding and error handling."""

    @pytest.mark.asyncio
    async def test_create_lxc_encodes_parameters(self, client):
        client._http_client.request.return_value = _response("UPID:pve:create")

        upid = await client.create_lxc(
            vmid=500,
            ostemplate="local:vztmpl/debian-12-standard.tar.zst",
            hostname="tpl",
            storage="local-lvm",
            memory=2048,
            cores=2,
            net0="name=eth0,bridge=vmbr0,ip=dhcp",
            features="nesting=1",
            ssh_public_keys="ssh-ed25519 AAAA test",
        )

        assert upid == "UPID:pve:create"
        method, path = client._http_client.request.call_args.args
        data = client._http_client.request.call_args.kwargs["data"]
        assert (method, path) == ("POST", "/nodes/pve/lxc")
        assert data["ssh-public-keys"] == "ssh-ed25519 AAAA test"
        assert data["unprivileged"] == 1
        assert data["start"] == 0
        assert data["features"] == "nesting=1"
        assert "password" not in data
        assert "tags" not in data

    @pytest.mark.asyncio
    async def test_clone_requests_full_clone(self, client):
        await client.clone_lxc(500, 501, hostname="ws")
        method, path = client._http_client.request.call_args.args
        data = client._http_client.request.call_args.kwargs["data"]
        assert (method, path) == ("POST", "/nodes/pve/lxc/500/clone")
        assert data == {"newid": 501, "hostname": "ws", "full": 1}

    @pytest.mark.asyncio
    async def test_shutdown_omits_force_stop_by_default(self, client):
        await client.shutdown_lxc(500)
        data = client._http_client.request.call_args.kwargs["data"]
        assert data == {"timeout": 30}

    @pytest.mark.asyncio
    async def test_error_status_raises(self, client):
        client._http_client.request.return_value = _response(
            status_code=500,
            body={"data": None, "errors": {"vmid": "CT 500 already exists on node 'pve'"}},
        )
        with pytest.raises(ProxmoxAPIError) as exc:
            await client.get_lxc_config(500)
        assert exc.value.status_code == 500
        assert exc.value.is_vmid_conflict
        assert not exc.value.is_not_found

    @pytest.mark.asyncio
    async def test_not_found_detection(self, client):
        client._http_client.request.return_value = _response(
            status_code=500, body={"data": None, "errors": {"vmid": "Configuration file 'x' does not exist"}}
        )
        with pytest.raises(ProxmoxAPIError) as exc:
            await client.get_lxc_status(999)
        assert exc.value.is_not_found

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, client):
        client._http_client.request.side_effect = httpx.ConnectError("refused")
        with pytest.raises(ProxmoxAPIError):
            await client.get_nodes()

    @pytest.mark.asyncio
    async def test_interfaces_best_effort(self, client):
        """Interface query failures yield an empty list instead of raising."""
        client._http_client.request.return_value = _response(status_code=501, body={"data": None})
        assert await client.get_lxc_interfaces(500) == []

    @pytest.mark.asyncio
    async def test_task_status_parsed(self, client):
        client._http_client.request.return_value = _response({"status": "stopped", "exitstatus": "OK"})
        status = await client.get_task_status("UPID:pve:1")
        assert status.succeeded
        assert client._http_client.request.call_args.args[1] == "/nodes/pve/tasks/UPID:pve:1/status"


class TestStorage:
    """Tests for template storage listings."""

    @pytest.mark.asyncio
    async def test_ct_templates_carry_node_and_storage(self, client):
        client._http_client.request.return_value = _response(
            [{"volid": "local:vztmpl/debian-12-standard.tar.zst", "content": "vztmpl"}]
        )
        templates = await client.list_ct_templates("local")
        assert templates[0].node == "pve"
        assert templates[0].storage == "local"
        assert client._http_client.request.call_args.kwargs["params"] == {"content": "vztmpl"}

    @pytest.mark.asyncio
    async def test_all_ct_templates_tolerates_storage_errors(self, client):
        async def fake_request(method, path, params=None, data=None):
            if path == "/nodes":
                return _response([{"node": "pve"}])
            if path == "/nodes/pve/storage":
                return _response([{"storage": "local"}, {"storage": "broken"}])
            if path == "/nodes/pve/storage/local/content":
                return _response([{"volid": "local:vztmpl/a.tar.zst"}])
            return _response(status_code=500, body={"data": None})

        client._http_client.request.side_effect = fake_request
        templates = await client.list_all_ct_templates()
        assert [t.volid for t in templates] == ["local:vztmpl/a.tar.zst"]


class TestNextVmid:
    """Tests for the inventory-only VMID scan."""

    @pytest.mark.asyncio
    async def test_first_gap(self, client):
        client.list_lxc = AsyncMock(return_value=[LxcSummary(vmid=100), LxcSummary(vmid=101)])
        assert await client.get_next_vmid() == 102

    @pytest.mark.asyncio
    async def test_exhausted(self, client):
        client.config = client.config.model_copy(update={"vmid_min": 100, "vmid_max": 101})
        client.list_lxc = AsyncMock(return_value=[LxcSummary(vmid=100), LxcSummary(vmid=101)])
        with pytest.raises(RangeExhaustedError):
            await client.get_next_vmid()
