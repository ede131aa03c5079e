# backend/vibespace/services/proxmox_backend.py
"""
Proxmox LXC implementation of the container backend.

Workspaces are full clones of a ready template. Container ids are VMIDs
rendered as strings; commands run over SSH against the container's IP.
"""
import logging
import re
import shlex
from typing import Dict, Optional

from vibespace.schemas.proxmox import ProxmoxRuntimeConfig
from vibespace.services.container_backend import ContainerBackend, ContainerConfig, ContainerInfo
from vibespace.services.errors import (
    ContainerStateError,
    PollTimeoutError,
    ProvisioningError,
    ProxmoxAPIError,
    RemoteTaskFailure,
    SSHConnectionError,
)
from vibespace.services.provisioning_scripts import ENV_FILE_PATH
from vibespace.services.proxmox_client import ProxmoxClient
from vibespace.services.ssh_service import (
    ENV_NAME_RE,
    Command,
    ExecResult,
    OutputCallback,
    SSHService,
    SSHStream,
    SSHTarget,
    find_public_key,
)
from vibespace.services.task_poller import (
    lookup_container_ip,
    poll_task_until_complete,
    wait_for_container_ip,
    wait_for_container_running,
)
from vibespace.services.tech_stacks import generate_install_script
from vibespace.services.vmid_allocator import VmidAllocator
from vibespace.utils.tags import build_workspace_tags, merge_tags

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_MB = 2048
DEFAULT_DISK_SIZE_GB = 50
CLONE_TIMEOUT = 300
DEFAULT_WORKSPACE_HOSTNAME = "vibespace-workspace"

_MEMORY_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmgt]?)b?$")
_MEMORY_FACTORS = {"": 1 / (1024 * 1024), "k": 1 / 1024, "m": 1, "g": 1024, "t": 1024 * 1024}

# hypervisor status -> workspace status
_STATUS_MAP = {"running": "running", "stopped": "exited"}


def parse_memory_to_mb(value: Optional[str], default: int = DEFAULT_MEMORY_MB) -> int:
    """
    Convert a memory limit like ``512m``, ``2g``, ``1048576k`` or a plain byte
    count into megabytes.
    """
    if value is None or value == "":
        return default
    match = _MEMORY_RE.match(str(value).strip().lower())
    if not match:
        logger.warning(f"Unrecognized memory limit '{value}', using {default}MB")
        return default
    amount, unit = match.groups()
    return max(1, int(float(amount) * _MEMORY_FACTORS[unit]))


def workspace_hostname(name: Optional[str]) -> str:
    hostname = re.sub(r"[^a-z0-9-]", "-", (name or "").lower())
    hostname = re.sub(r"-+", "-", hostname).strip("-")[:63].strip("-")
    return hostname or DEFAULT_WORKSPACE_HOSTNAME


def build_net0(
    bridge: str,
    static_ip: Optional[str] = None,
    gateway: Optional[str] = None,
    vlan_tag: Optional[int] = None,
) -> str:
    """Network device string for ``eth0``; static addresses default to /24."""
    parts = ["name=eth0", f"bridge={bridge}"]
    if static_ip:
        parts.append(f"ip={static_ip if '/' in static_ip else static_ip + '/24'}")
        if gateway:
            parts.append(f"gw={gateway}")
    else:
        parts.append("ip=dhcp")
    if vlan_tag:
        parts.append(f"tag={vlan_tag}")
    return ",".join(parts)


def build_env_file(env: Dict[str, str]) -> str:
    lines = ["# Managed by vibespace"]
    for name, value in env.items():
        if not ENV_NAME_RE.match(name):
            raise ValueError(f"Invalid environment variable name: {name!r}")
        lines.append(f"export {name}={shlex.quote(str(value))}")
    return "\n".join(lines) + "\n"


class ProxmoxBackend(ContainerBackend):
    """Workspace containers on a Proxmox node."""

    name = "proxmox"
    MAX_VMID_ATTEMPTS = 3

    def __init__(
        self,
        client: ProxmoxClient,
        ssh: SSHService,
        allocator: VmidAllocator,
        runtime_config: ProxmoxRuntimeConfig,
        host_target: Optional[SSHTarget] = None,
        task_timeout: float = 120,
    ):
        self.client = client
        self.ssh = ssh
        self.allocator = allocator
        self.runtime_config = runtime_config
        self.host_target = host_target
        self.task_timeout = task_timeout
        self._ip_cache: Dict[int, str] = {}

    @staticmethod
    def _vmid(container_id: str) -> int:
        try:
            return int(container_id)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid Proxmox container id: {container_id!r}")

    def _target(self, ip: str) -> SSHTarget:
        return SSHTarget(host=ip, username="root")

    async def _wait(self, upid: str, timeout: Optional[float] = None) -> None:
        await poll_task_until_complete(self.client, upid, timeout=timeout or self.task_timeout)

    # --- Create ---

    async def _clone(self, template_vmid: int, vmid: int, hostname: str) -> None:
        upid = await self.client.clone_lxc(
            template_vmid,
            vmid,
            hostname=hostname,
            description=f"vibespace workspace {hostname}",
            storage=self.runtime_config.storage,
            full=True,
        )
        await self._wait(upid, timeout=CLONE_TIMEOUT)

    async def _configure(self, vmid: int, config: ContainerConfig) -> None:
        cfg = self.runtime_config
        disk_size = config.disk_size_gb or cfg.disk_size_gb or DEFAULT_DISK_SIZE_GB
        try:
            upid = await self.client.resize_lxc_disk(vmid, disk_size)
            if upid:
                await self._wait(upid)
        except (ProxmoxAPIError, RemoteTaskFailure, PollTimeoutError) as e:
            logger.warning(f"Could not resize rootfs of {vmid} to {disk_size}G: {e}")

        existing = await self.client.get_lxc_config(vmid)
        await self.client.set_lxc_config(
            vmid,
            {
                "onboot": 1,
                "memory": parse_memory_to_mb(config.memory_limit, default=cfg.memory_mb or DEFAULT_MEMORY_MB),
                "cores": config.cpu_limit or cfg.cores,
                "net0": build_net0(cfg.bridge, config.static_ip, config.gateway, cfg.vlan_tag),
                "tags": merge_tags(
                    existing.get("tags"), build_workspace_tags(config.repo_name, config.tech_stacks)
                ),
            },
        )

    async def _discard(self, vmid: int) -> None:
        try:
            upid = await self.client.delete_lxc(vmid, purge=True)
            await self._wait(upid, timeout=60)
        except Exception as e:
            logger.warning(f"Cleanup of half-created workspace {vmid} failed: {e}")

    async def create_container(self, config: ContainerConfig) -> str:
        """
        Full-clone ``config.template_vmid`` into a new workspace container.

        The container is left stopped. A VMID the hypervisor rejects as taken
        is skipped and another allocated.
        """
        if config.template_vmid is None:
            raise ContainerStateError(f"No template selected for workspace {config.name}")
        hostname = workspace_hostname(config.name)

        for attempt in range(1, self.MAX_VMID_ATTEMPTS + 1):
            vmid = config.reuse_vmid or await self.allocator.allocate_workspace_vmid()
            owns_container = False
            conflict = False
            try:
                logger.info(f"Cloning template {config.template_vmid} to workspace {vmid} ({hostname})")
                try:
                    await self._clone(config.template_vmid, vmid, hostname)
                except ProxmoxAPIError as e:
                    if e.is_vmid_conflict and not config.reuse_vmid and attempt < self.MAX_VMID_ATTEMPTS:
                        logger.warning(f"VMID {vmid} already in use, allocating another")
                        conflict = True
                        continue
                    raise
                owns_container = True
                await self._configure(vmid, config)
                logger.info(f"Created workspace container {vmid}")
                return str(vmid)
            except Exception:
                if owns_container:
                    await self._discard(vmid)
                raise
            finally:
                # a rejected id stays reserved so the next allocation skips it
                if not conflict:
                    self.allocator.release(vmid)
        raise ContainerStateError(f"Could not find a free VMID for workspace {config.name}")

    # --- Power ---

    async def _setup_ssh_access(self, vmid: int) -> None:
        public_key = find_public_key()
        if self.host_target is None or not public_key:
            return
        try:
            await self.ssh.push_authorized_key(self.host_target, vmid, public_key)
        except (SSHConnectionError, PollTimeoutError) as e:
            logger.warning(f"Could not push SSH key into workspace {vmid}: {e}")

    async def _trigger_dhcp(self, vmid: int, interface: str) -> None:
        await self.ssh.trigger_dhcp(self.host_target, vmid, interface)

    async def start_container(self, container_id: str) -> bool:
        """Start, wait for running and an address, then make sure SSH works."""
        vmid = self._vmid(container_id)
        try:
            upid = await self.client.start_lxc(vmid)
        except ProxmoxAPIError as e:
            if e.is_not_found:
                logger.warning(f"Container not found: {vmid}")
                return False
            raise
        await self._wait(upid)
        await wait_for_container_running(self.client, vmid)
        ip = await wait_for_container_ip(
            self.client, vmid, dhcp_trigger=self._trigger_dhcp if self.host_target else None
        )
        self._ip_cache[vmid] = ip
        await self._setup_ssh_access(vmid)
        logger.info(f"Started container: {vmid} ({ip})")
        return True

    async def stop_container(self, container_id: str, timeout: int = 30) -> bool:
        """Graceful shutdown, forced stop if that does not finish."""
        vmid = self._vmid(container_id)
        self._ip_cache.pop(vmid, None)
        try:
            upid = await self.client.shutdown_lxc(vmid, timeout=timeout)
            await self._wait(upid, timeout=timeout + 30)
        except ProxmoxAPIError as e:
            if e.is_not_found:
                logger.warning(f"Container not found: {vmid}")
                return False
            logger.warning(f"Shutdown of {vmid} failed, forcing stop: {e}")
            await self._force_stop(vmid)
        except (RemoteTaskFailure, PollTimeoutError) as e:
            logger.warning(f"Shutdown of {vmid} failed, forcing stop: {e}")
            await self._force_stop(vmid)
        logger.info(f"Stopped container: {vmid}")
        return True

    async def _force_stop(self, vmid: int) -> None:
        upid = await self.client.stop_lxc(vmid)
        await self._wait(upid, timeout=30)

    async def remove_container(self, container_id: str) -> bool:
        vmid = self._vmid(container_id)
        self._ip_cache.pop(vmid, None)
        try:
            status = await self.client.get_lxc_status(vmid)
            if status.status == "running":
                await self._force_stop(vmid)
            upid = await self.client.delete_lxc(vmid, purge=True)
            await self._wait(upid, timeout=60)
        except ProxmoxAPIError as e:
            if e.is_not_found:
                logger.warning(f"Container not found: {vmid}")
                return False
            logger.error(f"Failed to remove container {vmid}: {e}")
            raise
        except RemoteTaskFailure as e:
            if "does not exist" in str(e):
                return False
            raise
        logger.info(f"Removed container: {vmid}")
        return True

    # --- Inspect ---

    async def get_container_ip(self, container_id: str) -> Optional[str]:
        vmid = self._vmid(container_id)
        if vmid in self._ip_cache:
            return self._ip_cache[vmid]
        ip = await lookup_container_ip(self.client, vmid, "eth0")
        if ip:
            self._ip_cache[vmid] = ip
        return ip

    async def get_container_info(self, container_id: str) -> Optional[ContainerInfo]:
        vmid = self._vmid(container_id)
        try:
            status = await self.client.get_lxc_status(vmid)
        except ProxmoxAPIError as e:
            if e.is_not_found:
                return None
            raise

        mapped = _STATUS_MAP.get(status.status, "created")
        ip = await self.get_container_ip(container_id) if mapped == "running" else None
        return ContainerInfo(
            id=str(vmid),
            status=mapped,
            name=status.name,
            ip_address=ip,
            node=self.client.node,
            raw=status.model_dump(),
        )

    # --- Exec ---

    async def _require_ip(self, container_id: str) -> str:
        ip = await self.get_container_ip(container_id)
        if not ip:
            raise ContainerStateError(f"Container {container_id} has no IP address; is it running?")
        return ip

    async def exec_command(
        self,
        container_id: str,
        command: Command,
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        on_output: Optional[OutputCallback] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        ip = await self._require_ip(container_id)
        return await self.ssh.execute(
            self._target(ip), command, working_dir=working_dir, env=env, on_output=on_output, timeout=timeout
        )

    async def open_stream(
        self,
        container_id: str,
        command: Optional[Command] = None,
        cols: int = 80,
        rows: int = 24,
    ) -> SSHStream:
        ip = await self._require_ip(container_id)
        target = SSHTarget(host=ip, username=self.runtime_config.workspace_user)
        return await self.ssh.open_stream(target, command, cols=cols, rows=rows)

    async def install_tech_stacks(
        self,
        container_id: str,
        stack_ids,
        on_output: Optional[OutputCallback] = None,
    ) -> Optional[ExecResult]:
        """Install stacks (and their dependencies) into a running workspace."""
        script = generate_install_script(stack_ids)
        if not script:
            return None
        ip = await self._require_ip(container_id)
        result = await self.ssh.run_script(
            self._target(ip),
            script,
            env={"WORKSPACE_USER": self.runtime_config.workspace_user},
            on_output=on_output,
        )
        if not result.ok:
            raise ProvisioningError(
                f"Tech stack installation failed in {container_id}", result.exit_code, result.stderr
            )
        return result

    async def inject_env_vars(self, container_id: str, env: Dict[str, str]) -> None:
        """Write ``env`` to the login profile; an empty mapping removes the file."""
        ip = await self._require_ip(container_id)
        if env:
            content = build_env_file(env)
            script = f"cat > {ENV_FILE_PATH} <<'VIBESPACE_ENV'\n{content}VIBESPACE_ENV\nchmod 644 {ENV_FILE_PATH}\n"
        else:
            script = f"rm -f {ENV_FILE_PATH}\n"
        result = await self.ssh.run_script(self._target(ip), script)
        if not result.ok:
            raise ProvisioningError(f"Could not write environment for {container_id}", result.exit_code, result.stderr)
