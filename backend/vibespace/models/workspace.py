# backend/vibespace/models/workspace.py
from enum import Enum
from typing import Optional
from uuid import UUID
from sqlalchemy import String, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vibespace.models.base import Base, TimestampMixin, UUIDMixin


class WorkspaceStatus(str, Enum):
    PENDING = "pending"
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class Workspace(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "workspaces"

    user_id: Mapped[UUID] = mapped_column(index=True)
    name: Mapped[str] = mapped_column(String(100))
    status: Mapped[WorkspaceStatus] = mapped_column(default=WorkspaceStatus.PENDING)

    # VMID as a string for proxmox, container id for other backends
    container_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    container_backend: Mapped[str] = mapped_column(String(20), default="proxmox")
    container_ip: Mapped[Optional[str]] = mapped_column(String(45))

    template_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("proxmox_templates.id", ondelete="SET NULL"), nullable=True
    )
    template = relationship("ProxmoxTemplate", back_populates="workspaces")
