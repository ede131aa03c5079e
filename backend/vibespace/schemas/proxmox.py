# backend/vibespace/schemas/proxmox.py
"""Typed views of hypervisor API payloads and persisted Proxmox settings."""
from typing import Optional, List, Literal, Union
from pydantic import BaseModel, ConfigDict, Field


class ProxmoxPayload(BaseModel):
    """Hypervisor responses carry many fields we never read; keep them."""
    model_config = ConfigDict(extra="allow")


class NodeInfo(ProxmoxPayload):
    node: str
    status: Optional[str] = None
    cpu: Optional[float] = None
    maxcpu: Optional[int] = None
    mem: Optional[int] = None
    maxmem: Optional[int] = None
    uptime: Optional[int] = None


class LxcSummary(ProxmoxPayload):
    vmid: int
    name: Optional[str] = None
    status: Optional[str] = None
    template: Optional[Union[int, str]] = None
    tags: Optional[str] = None


class LxcStatus(ProxmoxPayload):
    vmid: Optional[int] = None
    status: str
    name: Optional[str] = None
    uptime: Optional[int] = None
    template: Optional[Union[int, str]] = None


class TaskStatus(ProxmoxPayload):
    upid: Optional[str] = None
    status: Literal["running", "stopped"]
    exitstatus: Optional[str] = None
    type: Optional[str] = None
    node: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "stopped" and self.exitstatus == "OK"


class NetworkInterface(ProxmoxPayload):
    name: str
    hwaddr: Optional[str] = None
    inet: Optional[str] = None  # "10.0.0.5/24"
    inet6: Optional[str] = None


class ApplianceInfo(ProxmoxPayload):
    template: str
    package: Optional[str] = None
    version: Optional[str] = None
    os: Optional[str] = None
    section: Optional[str] = None
    headline: Optional[str] = None


class StorageInfo(ProxmoxPayload):
    storage: str
    type: Optional[str] = None
    content: Optional[str] = None  # comma separated, e.g. "vztmpl,iso,backup"
    active: Optional[int] = None


class StorageContent(ProxmoxPayload):
    volid: str  # "local:vztmpl/debian-12-standard_12.7-1_amd64.tar.zst"
    format: Optional[str] = None
    size: Optional[int] = None
    content: Optional[str] = None
    node: Optional[str] = None
    storage: Optional[str] = None


class ProxmoxRuntimeConfig(BaseModel):
    """Effective connection + defaults after merging stored settings over env."""
    host: Optional[str] = None
    port: int = 8006
    token_id: Optional[str] = None
    token_secret: Optional[str] = None
    node: Optional[str] = None
    storage: str = "local-lvm"
    bridge: str = "vmbr0"
    vlan_tag: Optional[int] = None
    memory_mb: int = 2048
    cores: int = 2
    disk_size_gb: int = 50
    vmid_min: int = 100
    vmid_max: int = 999999
    ssh_user: str = "root"
    ssh_private_key_path: Optional[str] = None
    workspace_user: str = "vibe"


class VmidConfig(BaseModel):
    starting_vmid: int = Field(default=500, ge=100)
    next_workspace_vmid: Optional[int] = None


class ProxmoxSettings(BaseModel):
    vlan_tag: Optional[int] = Field(None, ge=1, le=4094)
    default_storage: Optional[str] = None
    default_memory: Optional[int] = Field(None, ge=128)
    default_cpu_cores: Optional[int] = Field(None, ge=1)
    default_disk_size: Optional[int] = Field(None, ge=1)


class ConnectionSettings(BaseModel):
    host: str
    port: int = 8006
    token_id: str
    token_secret: str
    node: str


class ProgressEvent(BaseModel):
    step: str
    progress: int = Field(..., ge=0, le=100)
    message: str


class LogEvent(BaseModel):
    stream_kind: Literal["stdout", "stderr"]
    data: str


class TemplateStatusInfo(BaseModel):
    exists: bool
    vmid: Optional[int] = None
    status: Optional[str] = None
    is_template: bool = False
