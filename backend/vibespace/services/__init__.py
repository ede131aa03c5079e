# backend/vibespace/services/__init__.py
from .proxmox_client import ProxmoxClient
from .template_lifecycle import TemplateLifecycleService
from .template_manager import TemplateManager

__all__ = ['ProxmoxClient', 'TemplateLifecycleService', 'TemplateManager']
