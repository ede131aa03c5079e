# backend/vibespace/services/proxmox_client.py
"""
Async client for the Proxmox VE REST API.

Thin request wrapper: every call maps to one REST endpoint and returns the
``data`` field of the response. Mutating calls return the task UPID without
waiting; completion is handled by ``task_poller``.

TLS certificate verification is disabled for the hypervisor connection.
Proxmox installs ship a self-signed certificate, and homelab deployments
rarely replace it; this is an accepted risk for that deployment model.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from vibespace.schemas.proxmox import (
    ApplianceInfo,
    LxcStatus,
    LxcSummary,
    NetworkInterface,
    NodeInfo,
    ProxmoxRuntimeConfig,
    StorageContent,
    StorageInfo,
    TaskStatus,
)
from vibespace.services.errors import ConfigurationError, ProxmoxAPIError, RangeExhaustedError

logger = logging.getLogger(__name__)


class ProxmoxClient:
    """Typed wrapper over the per-node LXC, task, storage and appliance endpoints."""

    API_PREFIX = "/api2/json"

    def __init__(self, config: ProxmoxRuntimeConfig, timeout: float = 30.0):
        missing = [
            name for name in ("host", "token_id", "token_secret", "node")
            if not getattr(config, name)
        ]
        if missing:
            raise ConfigurationError(f"Proxmox configuration incomplete, missing: {', '.join(missing)}")

        self.config = config
        self.node: str = config.node
        self.base_url = f"https://{config.host}:{config.port}{self.API_PREFIX}"
        self._timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None
        logger.warning(f"TLS certificate verification disabled for Proxmox host {config.host}")

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"PVEAPIToken={self.config.token_id}={self.config.token_secret}",
                },
                verify=False,
                timeout=self._timeout,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "ProxmoxClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @staticmethod
    def _encode(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Drop unset values and encode booleans the way the API expects (0/1)."""
        if params is None:
            return None
        encoded = {}
        for key, value in params.items():
            if value is None:
                continue
            encoded[key] = int(value) if isinstance(value, bool) else value
        return encoded

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        message = f"{response.status_code} {response.reason_phrase}".strip()
        try:
            body = response.json()
        except ValueError:
            return message
        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            details = "; ".join(f"{k}: {v}" for k, v in errors.items())
            message = f"{message} ({details})"
        return message

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        client = await self._get_http_client()
        try:
            response = await client.request(method, path, params=self._encode(params), data=self._encode(data))
        except httpx.RequestError as e:
            raise ProxmoxAPIError(f"{method} {path} failed: {e}", path=path) from e

        if response.status_code >= 400:
            raise ProxmoxAPIError(self._error_message(response), status_code=response.status_code, path=path)

        return response.json().get("data")

    def _lxc_path(self, vmid: int, suffix: str = "", node: Optional[str] = None) -> str:
        return f"/nodes/{node or self.node}/lxc/{vmid}{suffix}"

    # --- Nodes ---

    async def get_nodes(self) -> List[NodeInfo]:
        data = await self._request("GET", "/nodes")
        return [NodeInfo(**item) for item in data or []]

    # --- LXC containers ---

    async def list_lxc(self, node: Optional[str] = None) -> List[LxcSummary]:
        data = await self._request("GET", f"/nodes/{node or self.node}/lxc")
        return [LxcSummary(**item) for item in data or []]

    async def get_lxc_status(self, vmid: int) -> LxcStatus:
        data = await self._request("GET", self._lxc_path(vmid, "/status/current"))
        return LxcStatus(**data)

    async def create_lxc(
        self,
        vmid: int,
        ostemplate: str,
        hostname: str,
        storage: str,
        memory: int,
        cores: int,
        net0: str,
        description: Optional[str] = None,
        features: Optional[str] = None,
        ssh_public_keys: Optional[str] = None,
        password: Optional[str] = None,
        tags: Optional[str] = None,
        unprivileged: bool = True,
        start: bool = False,
    ) -> str:
        """Create a container from an OS template volume. Returns the task UPID."""
        logger.info(f"Creating LXC {vmid} from {ostemplate} on {self.node}")
        return await self._request("POST", f"/nodes/{self.node}/lxc", data={
            "vmid": vmid,
            "ostemplate": ostemplate,
            "hostname": hostname,
            "description": description,
            "storage": storage,
            "memory": memory,
            "cores": cores,
            "net0": net0,
            "features": features,
            "unprivileged": unprivileged,
            "start": start,
            "ssh-public-keys": ssh_public_keys,
            "password": password,
            "tags": tags,
        })

    async def clone_lxc(
        self,
        vmid: int,
        newid: int,
        hostname: Optional[str] = None,
        description: Optional[str] = None,
        storage: Optional[str] = None,
        full: bool = True,
    ) -> str:
        """Clone a container or template to ``newid``. Returns the task UPID."""
        logger.info(f"Cloning LXC {vmid} -> {newid} (full={full})")
        return await self._request("POST", self._lxc_path(vmid, "/clone"), data={
            "newid": newid,
            "hostname": hostname,
            "description": description,
            "storage": storage,
            "full": full,
        })

    async def delete_lxc(self, vmid: int, purge: bool = True) -> str:
        logger.info(f"Deleting LXC {vmid}")
        return await self._request("DELETE", self._lxc_path(vmid), params={"purge": purge})

    async def start_lxc(self, vmid: int) -> str:
        return await self._request("POST", self._lxc_path(vmid, "/status/start"))

    async def stop_lxc(self, vmid: int, timeout: Optional[int] = None) -> str:
        """Hard stop."""
        return await self._request("POST", self._lxc_path(vmid, "/status/stop"), data={"timeout": timeout})

    async def shutdown_lxc(self, vmid: int, timeout: int = 30, force_stop: bool = False) -> str:
        """Graceful shutdown, optionally hard-stopping once ``timeout`` expires."""
        return await self._request("POST", self._lxc_path(vmid, "/status/shutdown"), data={
            "timeout": timeout,
            "forceStop": force_stop or None,
        })

    async def get_lxc_config(self, vmid: int) -> Dict[str, Any]:
        return await self._request("GET", self._lxc_path(vmid, "/config")) or {}

    async def set_lxc_config(self, vmid: int, config: Dict[str, Any]) -> None:
        await self._request("PUT", self._lxc_path(vmid, "/config"), data=config)

    async def resize_lxc_disk(self, vmid: int, size_gb: int, disk: str = "rootfs") -> Optional[str]:
        """Grow a volume to an absolute size. Returns a UPID on newer PVE releases."""
        return await self._request("PUT", self._lxc_path(vmid, "/resize"), data={
            "disk": disk,
            "size": f"{size_gb}G",
        })

    async def get_lxc_interfaces(self, vmid: int) -> List[NetworkInterface]:
        """Interfaces as seen from inside the guest. Empty when unavailable."""
        try:
            data = await self._request("GET", self._lxc_path(vmid, "/interfaces"))
        except ProxmoxAPIError as e:
            logger.debug(f"Interface query for {vmid} unavailable: {e}")
            return []
        return [NetworkInterface(**item) for item in data or []]

    async def convert_to_template(self, vmid: int) -> None:
        logger.info(f"Converting LXC {vmid} to template")
        await self._request("POST", self._lxc_path(vmid, "/template"))

    # --- Tasks ---

    async def get_task_status(self, upid: str, node: Optional[str] = None) -> TaskStatus:
        data = await self._request("GET", f"/nodes/{node or self.node}/tasks/{upid}/status")
        return TaskStatus(**data)

    # --- Appliances and storage ---

    async def list_appliances(self) -> List[ApplianceInfo]:
        data = await self._request("GET", f"/nodes/{self.node}/aplinfo")
        return [ApplianceInfo(**item) for item in data or []]

    async def download_appliance(self, storage: str, template: str) -> str:
        logger.info(f"Downloading appliance {template} to {storage}")
        return await self._request("POST", f"/nodes/{self.node}/aplinfo", data={
            "storage": storage,
            "template": template,
        })

    async def list_storage(self, node: Optional[str] = None, content: Optional[str] = None) -> List[StorageInfo]:
        data = await self._request("GET", f"/nodes/{node or self.node}/storage", params={"content": content})
        return [StorageInfo(**item) for item in data or []]

    async def list_ct_templates(self, storage: str = "local", node: Optional[str] = None) -> List[StorageContent]:
        """Container template volumes held by one storage."""
        node = node or self.node
        data = await self._request(
            "GET", f"/nodes/{node}/storage/{storage}/content", params={"content": "vztmpl"}
        )
        return [StorageContent(**{**item, "node": node, "storage": storage}) for item in data or []]

    async def list_all_ct_templates(self) -> List[StorageContent]:
        """Container templates across every node and every vztmpl-capable storage."""
        templates: List[StorageContent] = []
        for node in await self.get_nodes():
            for store in await self.list_storage(node=node.node, content="vztmpl"):
                try:
                    templates.extend(await self.list_ct_templates(store.storage, node=node.node))
                except ProxmoxAPIError as e:
                    logger.warning(f"Could not list templates on {node.node}/{store.storage}: {e}")
        return templates

    # --- VMIDs ---

    async def get_next_vmid(self) -> int:
        """First VMID in the configured range unused by this node's inventory."""
        used = {item.vmid for item in await self.list_lxc()}
        for vmid in range(self.config.vmid_min, self.config.vmid_max + 1):
            if vmid not in used:
                return vmid
        raise RangeExhaustedError(self.config.vmid_min, self.config.vmid_max)
