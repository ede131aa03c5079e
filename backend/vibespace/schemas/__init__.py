# backend/vibespace/schemas/__init__.py
from vibespace.schemas.template import (
    TemplateBase, TemplateCreate, TemplateUpdate, TemplateStatusUpdate, TemplateResponse,
)
from vibespace.schemas.proxmox import (
    ProxmoxRuntimeConfig, VmidConfig, ProxmoxSettings, ConnectionSettings,
    ProgressEvent, LogEvent, TaskStatus,
)

__all__ = [
    "TemplateBase", "TemplateCreate", "TemplateUpdate", "TemplateStatusUpdate", "TemplateResponse",
    "ProxmoxRuntimeConfig", "VmidConfig", "ProxmoxSettings", "ConnectionSettings",
    "ProgressEvent", "LogEvent", "TaskStatus",
]
