# backend/vibespace/models/template.py
from enum import Enum
from typing import Optional, List
from uuid import UUID
from sqlalchemy import String, Integer, Text, Boolean, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vibespace.models.base import Base, TimestampMixin, UUIDMixin


class TemplateStatus(str, Enum):
    PENDING = "pending"
    CREATING = "creating"
    STAGING = "staging"
    READY = "ready"
    ERROR = "error"


class ProxmoxTemplate(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "proxmox_templates"

    user_id: Mapped[UUID] = mapped_column(index=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text)

    # Cloning source; templates form a forest
    parent_template_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("proxmox_templates.id", ondelete="RESTRICT"), nullable=True
    )
    # OS appliance for fresh builds, e.g. "debian-12-standard"
    base_ct_template: Mapped[Optional[str]] = mapped_column(String(255))

    # Hypervisor placement, absent while pending
    vmid: Mapped[Optional[int]] = mapped_column(Integer, unique=True)
    node: Mapped[Optional[str]] = mapped_column(String(100))
    storage: Mapped[Optional[str]] = mapped_column(String(100))

    status: Mapped[TemplateStatus] = mapped_column(default=TemplateStatus.PENDING)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    staging_container_ip: Mapped[Optional[str]] = mapped_column(String(45))

    # Own stacks only; inherited_tech_stacks is frozen at creation
    tech_stacks: Mapped[List[str]] = mapped_column(JSON, default=list)
    inherited_tech_stacks: Mapped[List[str]] = mapped_column(JSON, default=list)

    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    env_vars: Mapped[Optional[dict]] = mapped_column(JSON)

    parent = relationship("ProxmoxTemplate", remote_side="ProxmoxTemplate.id", back_populates="children")
    children = relationship("ProxmoxTemplate", back_populates="parent")
    workspaces = relationship("Workspace", back_populates="template")

    @property
    def all_tech_stacks(self) -> List[str]:
        """Inherited stacks followed by own stacks, without duplicates."""
        seen = []
        for stack_id in list(self.inherited_tech_stacks or []) + list(self.tech_stacks or []):
            if stack_id not in seen:
                seen.append(stack_id)
        return seen
