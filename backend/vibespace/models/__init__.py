# backend/vibespace/models/__init__.py
from vibespace.models.base import Base
from vibespace.models.template import ProxmoxTemplate, TemplateStatus
from vibespace.models.workspace import Workspace, WorkspaceStatus
from vibespace.models.app_setting import AppSetting

__all__ = [
    "Base",
    "ProxmoxTemplate", "TemplateStatus",
    "Workspace", "WorkspaceStatus",
    "AppSetting",
]
