# backend/vibespace/services/template_manager.py
"""
Hypervisor-side template pipeline.

Builds a template container (fresh from an OS appliance, or cloned from a
parent template), provisions it over SSH, and either leaves it running for
manual staging or converts it to a template. Record keeping lives in
``template_lifecycle``.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from vibespace.schemas.proxmox import LogEvent, ProgressEvent, TemplateStatusInfo
from vibespace.services.errors import (
    LifecycleError,
    PollTimeoutError,
    ProvisioningError,
    ProxmoxAPIError,
    RemoteTaskFailure,
    StaleRecordError,
    VibespaceError,
)
from vibespace.services.provisioning_scripts import CLEANUP_SCRIPT, CORE_PROVISIONING_SCRIPT
from vibespace.services.proxmox_client import ProxmoxClient
from vibespace.services.ssh_service import SSHService, SSHTarget, find_public_key
from vibespace.services.task_poller import (
    poll_task_until_complete,
    wait_for_container_ip,
    wait_for_container_running,
)
from vibespace.services.tech_stacks import generate_install_script, requires_nesting
from vibespace.utils.callbacks import maybe_await
from vibespace.utils.tags import build_template_tags

logger = logging.getLogger(__name__)

DEFAULT_OS_TEMPLATE = "debian-12-standard"
# vztmpl content lives on directory storage; LVM pools cannot hold it
OS_TEMPLATE_STORAGE = "local"
DOWNLOAD_TIMEOUT = 300
CLONE_TIMEOUT = 300
DEFAULT_HOSTNAME = "vibespace-template"

ProgressCallback = Callable[[ProgressEvent], Any]
LogCallback = Callable[[LogEvent], Any]


@dataclass
class NodeSelection:
    node: str
    auto_selected: bool
    all_nodes: List[str]


@dataclass
class TemplateBuildOptions:
    storage: str
    memory_mb: int = 2048
    cores: int = 2
    bridge: str = "vmbr0"
    vlan_tag: Optional[int] = None
    name: Optional[str] = None
    tech_stacks: List[str] = field(default_factory=list)
    stop_at_staging: bool = False
    parent_vmid: Optional[int] = None
    base_ct_template: Optional[str] = None
    env_vars: Dict[str, str] = field(default_factory=dict)


@dataclass
class TemplateBuildResult:
    vmid: int
    node: str
    storage: str
    container_ip: Optional[str] = None

    @property
    def staged(self) -> bool:
        return self.container_ip is not None


def template_hostname(name: Optional[str]) -> str:
    hostname = re.sub(r"[^a-z0-9-]", "-", (name or DEFAULT_HOSTNAME).lower()).strip("-")[:63].strip("-")
    return hostname or DEFAULT_HOSTNAME


class TemplateManager:
    """Drives one template build against the hypervisor."""

    def __init__(
        self,
        client: ProxmoxClient,
        ssh: SSHService,
        host_target: Optional[SSHTarget] = None,
        workspace_user: str = "vibe",
        task_timeout: float = 120,
    ):
        self.client = client
        self.ssh = ssh
        self.host_target = host_target
        self.workspace_user = workspace_user
        self.task_timeout = task_timeout

    # --- Discovery ---

    async def get_nodes(self) -> NodeSelection:
        """Cluster nodes; a single-node cluster is selected automatically."""
        names = [n.node for n in await self.client.get_nodes()]
        return NodeSelection(node=names[0] if names else self.client.node, auto_selected=len(names) == 1, all_nodes=names)

    def get_ssh_public_key(self) -> Optional[str]:
        return find_public_key()

    async def setup_container_ssh_access(self, vmid: int, host: Optional[SSHTarget] = None) -> bool:
        """Push the local public key into a container through the hypervisor host."""
        host = host or self.host_target
        public_key = self.get_ssh_public_key()
        if host is None or not public_key:
            logger.warning(f"Cannot set up SSH access for {vmid}: no hypervisor host or public key")
            return False
        await self.ssh.push_authorized_key(host, vmid, public_key)
        logger.info(f"SSH access configured for container {vmid}")
        return True

    async def get_template_status(self, vmid: int) -> TemplateStatusInfo:
        """
        Live state of a recorded template container.

        Raises:
            StaleRecordError: the hypervisor no longer knows ``vmid``
        """
        try:
            status = await self.client.get_lxc_status(vmid)
            config = await self.client.get_lxc_config(vmid)
        except ProxmoxAPIError as e:
            if e.is_not_found:
                raise StaleRecordError(vmid) from e
            raise
        return TemplateStatusInfo(
            exists=True,
            vmid=vmid,
            status=status.status,
            is_template=bool(config.get("template")),
        )

    async def _find_stored_template(self, name: str, storage: str = OS_TEMPLATE_STORAGE) -> Optional[str]:
        for item in await self.client.list_ct_templates(storage):
            if name in item.volid:
                return item.volid
        return None

    async def ensure_os_template(self, base_ct_template: Optional[str] = None) -> str:
        """
        Resolve an OS appliance to a storage volume id, downloading it if needed.

        A full volume id (``storage:vztmpl/file``) must already exist. A bare
        name like ``debian-12-standard`` is looked up on local storage and
        downloaded from the appliance catalog when absent.
        """
        wanted = base_ct_template or DEFAULT_OS_TEMPLATE

        if ":" in wanted:
            stored = await self.client.list_all_ct_templates()
            if any(item.volid == wanted for item in stored):
                return wanted
            storage_id = wanted.split(":", 1)[0]
            raise VibespaceError(f"CT template '{wanted}' not found in storage '{storage_id}'")

        if volid := await self._find_stored_template(wanted):
            logger.info(f"OS template found: {volid}")
            return volid

        appliances = await self.client.list_appliances()
        matches = [a for a in appliances if wanted in a.template or (a.package and wanted in a.package)]
        if not matches:
            available = ", ".join(a.template for a in appliances)
            raise VibespaceError(f"CT template '{wanted}' not found. Available: {available}")
        # newest release; file names carry the version
        match = max(matches, key=lambda a: (a.version or "", a.template))

        logger.info(f"Downloading OS template {match.template}")
        upid = await self.client.download_appliance(OS_TEMPLATE_STORAGE, match.template)
        await poll_task_until_complete(self.client, upid, timeout=DOWNLOAD_TIMEOUT)

        if volid := await self._find_stored_template(wanted):
            return volid
        raise VibespaceError("Template download completed but template not found in storage")

    # --- Build pipeline ---

    async def _trigger_dhcp(self, vmid: int, interface: str) -> None:
        await self.ssh.trigger_dhcp(self.host_target, vmid, interface)

    def _container_target(self, ip: str) -> SSHTarget:
        return SSHTarget(host=ip, username="root")

    def _script_env(self, env_vars: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        return {**(env_vars or {}), "WORKSPACE_USER": self.workspace_user}

    @staticmethod
    def _log_adapter(on_log: Optional[LogCallback]):
        if on_log is None:
            return None

        def forward(kind: str, data: str):
            return on_log(LogEvent(stream_kind=kind, data=data))
        return forward

    async def _run_script(
        self,
        target: SSHTarget,
        script: str,
        label: str,
        env: Dict[str, str],
        on_log: Optional[LogCallback],
    ) -> None:
        result = await self.ssh.run_script(target, script, env=env, on_output=self._log_adapter(on_log))
        if not result.ok:
            logger.error(f"{label} failed on {target.host} (exit {result.exit_code})")
            raise ProvisioningError(f"{label} failed with exit code {result.exit_code}", result.exit_code, result.stderr)

    async def run_cleanup(self, container_ip: str, on_log: Optional[LogCallback] = None) -> None:
        await self._run_script(self._container_target(container_ip), CLEANUP_SCRIPT, "Cleanup", self._script_env(), on_log)

    async def _stop_and_wait(self, vmid: int) -> None:
        """Graceful shutdown, hard stop if that fails, then wait until stopped."""
        try:
            upid = await self.client.shutdown_lxc(vmid, timeout=30)
            await poll_task_until_complete(self.client, upid, timeout=60)
        except (ProxmoxAPIError, RemoteTaskFailure, PollTimeoutError) as e:
            logger.warning(f"Graceful shutdown of {vmid} failed, forcing stop: {e}")
            upid = await self.client.stop_lxc(vmid)
            await poll_task_until_complete(self.client, upid, timeout=30)

        for _ in range(30):
            if (await self.client.get_lxc_status(vmid)).status == "stopped":
                return
            await asyncio.sleep(1)
        logger.warning(f"Container {vmid} did not report stopped after 30s")

    async def _rollback(self, vmid: int) -> None:
        """Best-effort stop + delete of a partially built container."""
        logger.warning(f"Rolling back container {vmid}")
        try:
            upid = await self.client.stop_lxc(vmid)
            await poll_task_until_complete(self.client, upid, timeout=30)
        except Exception as e:
            logger.debug(f"Rollback stop of {vmid} failed: {e}")
        try:
            upid = await self.client.delete_lxc(vmid, purge=True)
            await poll_task_until_complete(self.client, upid, timeout=60)
        except Exception as e:
            logger.warning(f"Rollback delete of {vmid} failed: {e}")

    async def create_template(
        self,
        vmid: int,
        options: TemplateBuildOptions,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> TemplateBuildResult:
        """
        Build a template container at ``vmid``.

        With ``options.parent_vmid`` the parent is full-cloned and only
        ``options.tech_stacks`` (the stacks the parent lacks) are installed.
        Otherwise the container is created from an OS appliance and gets the
        core provisioning script first. With ``stop_at_staging`` the running
        container's IP is returned and conversion is left to
        ``finalize_template``.

        Any failure after the container exists deletes it again and raises
        LifecycleError naming the step that failed.
        """
        step = "init"
        owns_container = False

        async def progress(name: str, pct: int, message: str) -> None:
            nonlocal step
            step = name
            logger.info(f"[{pct}%] {vmid} {name}: {message}")
            if on_progress:
                await maybe_await(on_progress(ProgressEvent(step=name, progress=pct, message=message)))

        stacks = list(options.tech_stacks)
        needs_nesting = requires_nesting(stacks)
        hostname = template_hostname(options.name)
        description = f"Vibespace template: {options.name}" if options.name else "Vibespace workspace template"
        tags = build_template_tags(stacks)
        cloning = options.parent_vmid is not None

        try:
            if cloning:
                await progress("clone", 5, f"Cloning from parent template VMID {options.parent_vmid}...")
                upid = await self.client.clone_lxc(
                    options.parent_vmid, vmid,
                    hostname=hostname, description=description, storage=options.storage, full=True,
                )
                owns_container = True
                await poll_task_until_complete(
                    self.client, upid, timeout=CLONE_TIMEOUT,
                    on_progress=lambda s: progress("clone", 20, s),
                )
                # clone does not accept features; patch the config directly
                if needs_nesting:
                    await progress("config", 25, "Enabling LXC nesting for Docker support...")
                    await self.client.set_lxc_config(vmid, {"features": "nesting=1"})
                try:
                    await self.client.set_lxc_config(vmid, {"tags": tags})
                except ProxmoxAPIError as e:
                    logger.warning(f"Could not set tags for template {vmid}: {e}")
            else:
                await progress("ssh-key", 5, "Reading SSH public key...")
                public_key = self.get_ssh_public_key()
                if not public_key:
                    raise VibespaceError("No SSH public key found. Generate a key pair for the service user.")

                wanted = options.base_ct_template or DEFAULT_OS_TEMPLATE
                await progress("os-template", 10, f"Checking CT template: {wanted}...")
                os_template = await self.ensure_os_template(options.base_ct_template)
                await progress("os-template", 15, f"Using OS template: {os_template}")

                await progress("create", 20, "Creating container...")
                net0 = f"name=eth0,bridge={options.bridge},ip=dhcp"
                if options.vlan_tag:
                    net0 += f",tag={options.vlan_tag}"
                upid = await self.client.create_lxc(
                    vmid,
                    ostemplate=os_template,
                    hostname=hostname,
                    description=description,
                    storage=options.storage,
                    memory=options.memory_mb,
                    cores=options.cores,
                    net0=net0,
                    features="nesting=1" if needs_nesting else None,
                    ssh_public_keys=public_key,
                    tags=tags,
                )
                owns_container = True
                await poll_task_until_complete(
                    self.client, upid, timeout=self.task_timeout,
                    on_progress=lambda s: progress("create", 25, s),
                )

            await progress("start", 30, "Starting container...")
            upid = await self.client.start_lxc(vmid)
            await poll_task_until_complete(self.client, upid, timeout=60)
            await wait_for_container_running(self.client, vmid)

            await progress("network", 35, "Waiting for network...")
            container_ip = await wait_for_container_ip(
                self.client, vmid,
                dhcp_trigger=self._trigger_dhcp if self.host_target else None,
            )
            await progress("network", 40, f"Container IP: {container_ip}")

            target = self._container_target(container_ip)
            env = self._script_env(options.env_vars)
            await progress("provision", 45, "Waiting for SSH...")
            await self.ssh.wait_for_ssh(target)

            if not cloning:
                await progress("provision", 45, "Provisioning container (this may take several minutes)...")
                await self._run_script(target, CORE_PROVISIONING_SCRIPT, "Core provisioning", env, on_log)

            if stacks:
                await progress("provision", 70, f"Installing tech stacks: {', '.join(stacks)}...")
                await self._run_script(target, generate_install_script(stacks), "Tech stack installation", env, on_log)
            else:
                await progress("provision", 70, "No additional software to install")

            if options.stop_at_staging:
                await progress("staging", 80, "Container ready for staging - connect via SSH to customize")
                return TemplateBuildResult(vmid=vmid, node=self.client.node, storage=options.storage, container_ip=container_ip)

            await progress("provision", 75, "Cleaning up...")
            try:
                await self.run_cleanup(container_ip, on_log)
            except VibespaceError as e:
                logger.warning(f"Cleanup on {vmid} failed (non-fatal): {e}")

            await progress("stop", 85, "Stopping container...")
            await self._stop_and_wait(vmid)

            await progress("template", 95, "Converting to template...")
            await self.client.convert_to_template(vmid)
        except Exception as e:
            logger.error(f"Template build {vmid} failed at step '{step}': {e}")
            if owns_container:
                await self._rollback(vmid)
            raise LifecycleError(vmid, step, str(e), cause=e) from e

        await progress("complete", 100, "Template created successfully!")
        return TemplateBuildResult(vmid=vmid, node=self.client.node, storage=options.storage)

    async def finalize_template(
        self,
        vmid: int,
        container_ip: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> None:
        """Clean up, stop and convert a staged container."""
        step = "cleanup"

        async def progress(name: str, pct: int, message: str) -> None:
            nonlocal step
            step = name
            logger.info(f"[{pct}%] {vmid} {name}: {message}")
            if on_progress:
                await maybe_await(on_progress(ProgressEvent(step=name, progress=pct, message=message)))

        try:
            if container_ip:
                await progress("cleanup", 10, "Running cleanup script...")
                try:
                    await self.run_cleanup(container_ip, on_log)
                    await progress("cleanup", 30, "Cleanup complete")
                except VibespaceError as e:
                    logger.warning(f"Cleanup on {vmid} failed (non-fatal): {e}")
                    await progress("cleanup", 30, "Cleanup skipped (container may not be accessible)")

            await progress("stop", 40, "Stopping staging container...")
            await self._stop_and_wait(vmid)
            await progress("stop", 60, "Container stopped")

            await progress("template", 80, "Converting to template...")
            await self.client.convert_to_template(vmid)
        except Exception as e:
            raise LifecycleError(vmid, step, str(e), cause=e) from e

        await progress("complete", 100, "Template finalized successfully!")

    async def delete_container_template(self, vmid: int) -> None:
        """Stop and delete a template container. Already-gone counts as success."""
        try:
            status = await self.client.get_lxc_status(vmid)
        except ProxmoxAPIError as e:
            if e.is_not_found:
                logger.info(f"Container {vmid} already gone")
                return
            raise

        if status.status != "stopped":
            try:
                upid = await self.client.stop_lxc(vmid)
                await poll_task_until_complete(self.client, upid, timeout=30)
            except (ProxmoxAPIError, RemoteTaskFailure) as e:
                logger.warning(f"Could not stop {vmid} before delete: {e}")

        try:
            upid = await self.client.delete_lxc(vmid, purge=True)
            await poll_task_until_complete(self.client, upid, timeout=60)
        except ProxmoxAPIError as e:
            if e.is_not_found:
                return
            raise
        except RemoteTaskFailure as e:
            if "does not exist" in str(e).lower():
                return
            raise
        logger.info(f"Deleted template container {vmid}")
