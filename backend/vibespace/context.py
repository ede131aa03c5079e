# backend/vibespace/context.py
"""
Process-wide service wiring.

Clients and services are built once at startup from the effective
configuration and handed to whatever needs them.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from vibespace.config import Settings, get_settings
from vibespace.database import get_session_local
from vibespace.schemas.proxmox import ProxmoxRuntimeConfig
from vibespace.services.container_backend import ContainerBackend, get_container_backend
from vibespace.services.event_broadcaster import ProgressBroadcaster
from vibespace.services.proxmox_client import ProxmoxClient
from vibespace.services.settings_service import SettingsService
from vibespace.services.ssh_service import SSHService, SSHTarget
from vibespace.services.template_lifecycle import TemplateLifecycleService
from vibespace.services.template_manager import TemplateManager
from vibespace.services.vmid_allocator import VmidAllocator

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    runtime_config: ProxmoxRuntimeConfig
    session_factory: sessionmaker
    client: ProxmoxClient
    ssh: SSHService
    allocator: VmidAllocator
    manager: TemplateManager
    lifecycle: TemplateLifecycleService
    backend: ContainerBackend
    broadcaster: ProgressBroadcaster

    async def close(self) -> None:
        await self.client.close()
        await self.broadcaster.disconnect()


def build_app_context(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
) -> AppContext:
    """
    Wire every service from the effective configuration.

    Raises:
        ConfigurationError: hypervisor connection details are incomplete, or
            the configured container backend is not supported
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_local()

    db = session_factory()
    try:
        runtime_config = SettingsService(db, settings).get_runtime_config()
    finally:
        db.close()

    client = ProxmoxClient(runtime_config, timeout=settings.proxmox_http_timeout)
    ssh = SSHService(
        private_key_path=runtime_config.ssh_private_key_path,
        connect_timeout=settings.ssh_connect_timeout,
    )
    host_target = SSHTarget(
        host=runtime_config.host,
        username=runtime_config.ssh_user,
        private_key_path=runtime_config.ssh_private_key_path,
    )
    allocator = VmidAllocator(client, session_factory)
    manager = TemplateManager(
        client,
        ssh,
        host_target=host_target,
        workspace_user=runtime_config.workspace_user,
        task_timeout=settings.task_timeout,
    )
    lifecycle = TemplateLifecycleService(manager, allocator, session_factory, runtime_config)
    backend = get_container_backend(
        settings.container_backend,
        client=client,
        ssh=ssh,
        allocator=allocator,
        runtime_config=runtime_config,
        host_target=host_target,
        task_timeout=settings.task_timeout,
    )

    logger.info(f"Services configured for node {runtime_config.node} at {runtime_config.host}")
    return AppContext(
        settings=settings,
        runtime_config=runtime_config,
        session_factory=session_factory,
        client=client,
        ssh=ssh,
        allocator=allocator,
        manager=manager,
        lifecycle=lifecycle,
        backend=backend,
        broadcaster=ProgressBroadcaster(settings.redis_url),
    )
