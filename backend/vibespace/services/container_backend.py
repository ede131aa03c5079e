# backend/vibespace/services/container_backend.py
"""
Container backend interface.

Workspace code depends on this narrow capability set only, so a different
runtime can be plugged in by implementing the same operations.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from vibespace.services.errors import ConfigurationError
from vibespace.services.ssh_service import Command, ExecResult, OutputCallback, SSHStream


@dataclass
class ContainerConfig:
    """Everything needed to create one workspace container."""
    name: str
    template_vmid: Optional[int] = None
    memory_limit: Optional[str] = None
    cpu_limit: Optional[int] = None
    disk_size_gb: Optional[int] = None
    static_ip: Optional[str] = None
    gateway: Optional[str] = None
    repo_name: Optional[str] = None
    tech_stacks: List[str] = field(default_factory=list)
    reuse_vmid: Optional[int] = None


@dataclass
class ContainerInfo:
    id: str
    status: str
    name: Optional[str] = None
    ip_address: Optional[str] = None
    node: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class ContainerBackend(ABC):
    """Create, start, stop, destroy, inspect, exec and stream."""

    name: str = ""

    @abstractmethod
    async def create_container(self, config: ContainerConfig) -> str:
        """Create a stopped container and return its id."""

    @abstractmethod
    async def start_container(self, container_id: str) -> bool:
        ...

    @abstractmethod
    async def stop_container(self, container_id: str, timeout: int = 30) -> bool:
        ...

    @abstractmethod
    async def remove_container(self, container_id: str) -> bool:
        ...

    @abstractmethod
    async def get_container_info(self, container_id: str) -> Optional[ContainerInfo]:
        """Current state, or None if the container does not exist."""

    @abstractmethod
    async def exec_command(
        self,
        container_id: str,
        command: Command,
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        on_output: Optional[OutputCallback] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        ...

    @abstractmethod
    async def open_stream(
        self,
        container_id: str,
        command: Optional[Command] = None,
        cols: int = 80,
        rows: int = 24,
    ) -> SSHStream:
        ...

    async def restart_container(self, container_id: str, timeout: int = 30) -> bool:
        if not await self.stop_container(container_id, timeout=timeout):
            return False
        return await self.start_container(container_id)


def get_container_backend(backend_type: str, **dependencies) -> ContainerBackend:
    """Instantiate the configured backend."""
    if backend_type == "proxmox":
        from vibespace.services.proxmox_backend import ProxmoxBackend
        return ProxmoxBackend(**dependencies)
    raise ConfigurationError(f"Unsupported container backend: {backend_type}")
