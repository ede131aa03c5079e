# backend/vibespace/services/template_service.py
"""Template record management (the application side of the template lifecycle)."""
import logging
from typing import List, Optional, Set
from uuid import UUID

from sqlalchemy.orm import Session

from vibespace.models.template import ProxmoxTemplate, TemplateStatus
from vibespace.models.workspace import Workspace
from vibespace.schemas.template import TemplateCreate, TemplateStatusUpdate, TemplateUpdate
from vibespace.services.errors import TemplateNotFoundError, TemplateValidationError

logger = logging.getLogger(__name__)


class TemplateService:
    """CRUD and structural rules for ProxmoxTemplate rows."""

    def __init__(self, db: Session):
        self.db = db

    def list_templates(self, user_id: UUID) -> List[ProxmoxTemplate]:
        """Default template first, then newest first."""
        return (
            self.db.query(ProxmoxTemplate)
            .filter(ProxmoxTemplate.user_id == user_id)
            .order_by(ProxmoxTemplate.is_default.desc(), ProxmoxTemplate.created_at.desc())
            .all()
        )

    def get_template(self, template_id: UUID) -> Optional[ProxmoxTemplate]:
        return self.db.query(ProxmoxTemplate).filter(ProxmoxTemplate.id == template_id).first()

    def require_template(self, template_id: UUID) -> ProxmoxTemplate:
        template = self.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")
        return template

    def get_default_template(self, user_id: UUID) -> Optional[ProxmoxTemplate]:
        """The flagged default, falling back to the newest template."""
        default = (
            self.db.query(ProxmoxTemplate)
            .filter(ProxmoxTemplate.user_id == user_id, ProxmoxTemplate.is_default.is_(True))
            .first()
        )
        if default:
            return default
        return (
            self.db.query(ProxmoxTemplate)
            .filter(ProxmoxTemplate.user_id == user_id)
            .order_by(ProxmoxTemplate.created_at.desc())
            .first()
        )

    def get_template_for_workspace(self, workspace: Workspace) -> Optional[ProxmoxTemplate]:
        """Template the workspace was built from, or the owner's default."""
        if workspace.template_id:
            if template := self.get_template(workspace.template_id):
                return template
        return self.get_default_template(workspace.user_id)

    def _ancestor_stacks(self, parent: ProxmoxTemplate) -> List[str]:
        """Stack closure of ``parent`` and all of its ancestors, ancestors first."""
        chain: List[ProxmoxTemplate] = []
        seen: Set[UUID] = set()
        current: Optional[ProxmoxTemplate] = parent
        while current is not None:
            if current.id in seen:
                raise TemplateValidationError(f"Template {parent.id} has a cycle in its ancestor chain")
            seen.add(current.id)
            chain.append(current)
            current = self.get_template(current.parent_template_id) if current.parent_template_id else None

        stacks: List[str] = []
        for template in reversed(chain):
            for stack_id in list(template.inherited_tech_stacks or []) + list(template.tech_stacks or []):
                if stack_id not in stacks:
                    stacks.append(stack_id)
        return stacks

    def create_template(self, user_id: UUID, data: TemplateCreate) -> ProxmoxTemplate:
        """
        Create a pending template record.

        When cloning, the parent must exist and be ready. Inherited stacks are
        captured from the ancestor chain now and never recomputed.
        """
        inherited: List[str] = []
        if data.parent_template_id:
            parent = self.get_template(data.parent_template_id)
            if parent is None:
                raise TemplateValidationError(f"Parent template {data.parent_template_id} not found")
            if parent.status != TemplateStatus.READY or parent.vmid is None:
                raise TemplateValidationError(f"Parent template {parent.name} is not ready")
            inherited = self._ancestor_stacks(parent)

        own_stacks = []
        for stack_id in data.tech_stacks:
            if stack_id not in inherited and stack_id not in own_stacks:
                own_stacks.append(stack_id)

        is_first = self.db.query(ProxmoxTemplate).filter(ProxmoxTemplate.user_id == user_id).count() == 0
        is_default = data.is_default or is_first
        if is_default:
            self._clear_default(user_id)

        template = ProxmoxTemplate(
            user_id=user_id,
            name=data.name,
            description=data.description,
            parent_template_id=data.parent_template_id,
            base_ct_template=data.base_ct_template,
            tech_stacks=own_stacks,
            inherited_tech_stacks=inherited,
            env_vars=data.env_vars,
            is_default=is_default,
            status=TemplateStatus.PENDING,
        )
        self.db.add(template)
        self.db.commit()
        self.db.refresh(template)
        logger.info(f"Created template record {template.id} ({template.name})")
        return template

    def update_template(self, template_id: UUID, data: TemplateUpdate) -> ProxmoxTemplate:
        template = self.require_template(template_id)
        updates = data.model_dump(exclude_unset=True)
        if updates.pop("is_default", None):
            self._clear_default(template.user_id)
            template.is_default = True
        for field, value in updates.items():
            setattr(template, field, value)
        self.db.commit()
        self.db.refresh(template)
        return template

    def update_template_status(self, template_id: UUID, update: TemplateStatusUpdate) -> ProxmoxTemplate:
        template = self.require_template(template_id)
        template.status = update.status
        for field in ("vmid", "node", "storage", "staging_container_ip"):
            value = getattr(update, field)
            if value is not None:
                setattr(template, field, value)
        if update.status != TemplateStatus.STAGING:
            template.staging_container_ip = None
        if update.status == TemplateStatus.ERROR:
            template.error_message = update.error_message or "Unknown error"
        else:
            template.error_message = None
        self.db.commit()
        self.db.refresh(template)
        logger.info(f"Template {template_id} -> {update.status.value}")
        return template

    def clear_hypervisor_state(
        self, template_id: UUID, status: TemplateStatus = TemplateStatus.PENDING
    ) -> None:
        """Forget the container behind a record (it is gone from the hypervisor)."""
        template = self.require_template(template_id)
        template.vmid = None
        template.node = None
        template.staging_container_ip = None
        template.status = status
        self.db.commit()

    def _clear_default(self, user_id: UUID) -> None:
        self.db.query(ProxmoxTemplate).filter(
            ProxmoxTemplate.user_id == user_id, ProxmoxTemplate.is_default.is_(True)
        ).update({ProxmoxTemplate.is_default: False}, synchronize_session="fetch")

    def set_default_template(self, template_id: UUID) -> ProxmoxTemplate:
        template = self.require_template(template_id)
        self._clear_default(template.user_id)
        template.is_default = True
        self.db.commit()
        self.db.refresh(template)
        return template

    def list_children(self, template_id: UUID) -> List[ProxmoxTemplate]:
        return self.db.query(ProxmoxTemplate).filter(ProxmoxTemplate.parent_template_id == template_id).all()

    def delete_template(self, template_id: UUID) -> None:
        """Delete a record. Templates with children cannot be deleted."""
        template = self.require_template(template_id)
        children = self.list_children(template_id)
        if children:
            names = ", ".join(child.name for child in children)
            raise TemplateValidationError(f"Template {template.name} has child templates: {names}")

        user_id, was_default = template.user_id, template.is_default
        self.db.delete(template)
        self.db.commit()
        logger.info(f"Deleted template record {template_id}")

        if was_default:
            replacement = self.get_default_template(user_id)
            if replacement:
                replacement.is_default = True
                self.db.commit()

    def get_parent_vmid(self, template: ProxmoxTemplate) -> Optional[int]:
        """VMID to clone from, provided the parent is ready."""
        if not template.parent_template_id:
            return None
        parent = self.get_template(template.parent_template_id)
        if parent is None:
            raise TemplateValidationError(f"Parent template {template.parent_template_id} not found")
        if parent.status != TemplateStatus.READY or parent.vmid is None:
            raise TemplateValidationError(f"Parent template {parent.name} is not ready")
        return parent.vmid

    def list_used_vmids(self) -> Set[int]:
        """VMIDs referenced by any template or proxmox workspace record."""
        used = {
            vmid for (vmid,) in self.db.query(ProxmoxTemplate.vmid).filter(ProxmoxTemplate.vmid.isnot(None))
        }
        rows = self.db.query(Workspace.container_id).filter(
            Workspace.container_backend == "proxmox", Workspace.container_id.isnot(None)
        )
        for (container_id,) in rows:
            if container_id.isdigit():
                used.add(int(container_id))
        return used
