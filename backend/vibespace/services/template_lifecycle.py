# backend/vibespace/services/template_lifecycle.py
"""
Template lifecycle orchestration.

Ties template records to hypervisor builds:
pending -> creating -> staging | ready, with error reachable from any
in-progress state. A retry after error starts a fresh build, and an
existing template can be rebuilt in place at its VMID.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from vibespace.models.template import TemplateStatus
from vibespace.schemas.proxmox import ProgressEvent, ProxmoxRuntimeConfig, TemplateStatusInfo
from vibespace.schemas.template import TemplateResponse, TemplateStatusUpdate
from vibespace.services.errors import (
    LifecycleError,
    ProxmoxAPIError,
    StaleRecordError,
    TemplateValidationError,
    VibespaceError,
)
from vibespace.services.template_manager import (
    LogCallback,
    ProgressCallback,
    TemplateBuildOptions,
    TemplateManager,
)
from vibespace.services.template_service import TemplateService
from vibespace.services.vmid_allocator import VmidAllocator
from vibespace.utils.callbacks import maybe_await

logger = logging.getLogger(__name__)


def _is_vmid_conflict(error: LifecycleError) -> bool:
    return isinstance(error.cause, ProxmoxAPIError) and error.cause.is_vmid_conflict


class TemplateLifecycleService:
    """Provision, recreate, finalize, inspect and delete templates."""

    MAX_VMID_ATTEMPTS = 3

    def __init__(
        self,
        manager: TemplateManager,
        allocator: VmidAllocator,
        session_factory: sessionmaker,
        runtime_config: ProxmoxRuntimeConfig,
    ):
        self.manager = manager
        self.allocator = allocator
        self.session_factory = session_factory
        self.runtime_config = runtime_config

    @contextmanager
    def _records(self) -> Iterator[TemplateService]:
        db = self.session_factory()
        try:
            yield TemplateService(db)
        finally:
            db.close()

    def _mark_error(self, template_id: UUID, message: str) -> None:
        with self._records() as records:
            records.update_template_status(
                template_id, TemplateStatusUpdate(status=TemplateStatus.ERROR, error_message=message)
            )

    def _build_options(
        self,
        template,
        parent_vmid: Optional[int],
        storage: Optional[str],
        stop_at_staging: bool,
    ) -> TemplateBuildOptions:
        cfg = self.runtime_config
        return TemplateBuildOptions(
            storage=storage or cfg.storage,
            memory_mb=cfg.memory_mb,
            cores=cfg.cores,
            bridge=cfg.bridge,
            vlan_tag=cfg.vlan_tag,
            name=template.name,
            tech_stacks=list(template.tech_stacks or []),
            stop_at_staging=stop_at_staging,
            parent_vmid=parent_vmid,
            base_ct_template=template.base_ct_template,
            env_vars=dict(template.env_vars or {}),
        )

    def _load_options(
        self, template_id: UUID, storage: Optional[str], stop_at_staging: bool
    ) -> TemplateBuildOptions:
        with self._records() as records:
            template = records.require_template(template_id)
            parent_vmid = records.get_parent_vmid(template)
            return self._build_options(template, parent_vmid, storage, stop_at_staging)

    def _persist_result(self, template_id: UUID, result) -> TemplateResponse:
        with self._records() as records:
            if result.staged:
                update = TemplateStatusUpdate(
                    status=TemplateStatus.STAGING,
                    vmid=result.vmid,
                    node=result.node,
                    storage=result.storage,
                    staging_container_ip=result.container_ip,
                )
            else:
                update = TemplateStatusUpdate(
                    status=TemplateStatus.READY, vmid=result.vmid, node=result.node, storage=result.storage
                )
            template = records.update_template_status(template_id, update)
            return TemplateResponse.model_validate(template)

    def _fail(self, template_id: UUID, step: str, error: Exception) -> LifecycleError:
        """Record an unexpected failure and wrap it for the caller."""
        self._mark_error(template_id, str(error))
        logger.exception(f"Template {template_id} failed during {step}")
        return LifecycleError(template_id, step, str(error), cause=error)

    async def provision(
        self,
        template_id: UUID,
        stop_at_staging: bool = False,
        storage: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> TemplateResponse:
        """
        Build the hypervisor container for a pending (or failed) template.

        A failed template that still owns a container (e.g. a staged build whose
        finalize failed) has that container deleted before the new build starts.

        Raises:
            TemplateValidationError: the template is not in a provisionable state
            LifecycleError: the build failed; the record is left in ``error``
        """
        with self._records() as records:
            template = records.require_template(template_id)
            if template.status not in (TemplateStatus.PENDING, TemplateStatus.ERROR):
                raise TemplateValidationError(
                    f"Template {template.name} cannot be provisioned while {template.status.value}"
                )
            stale_vmid = template.vmid if template.status == TemplateStatus.ERROR else None
            records.update_template_status(template_id, TemplateStatusUpdate(status=TemplateStatus.CREATING))

        step = "validate"
        reserved = None
        try:
            options = self._load_options(template_id, storage, stop_at_staging)

            if stale_vmid is not None:
                step = "cleanup"
                logger.info(f"Removing container {stale_vmid} left by a failed build of template {template_id}")
                await self.manager.delete_container_template(stale_vmid)
                with self._records() as records:
                    records.clear_hypervisor_state(template_id, status=TemplateStatus.CREATING)

            result = None
            for attempt in range(1, self.MAX_VMID_ATTEMPTS + 1):
                step = "allocate"
                reserved = await self.allocator.allocate_template_vmid()
                step = "build"
                try:
                    result = await self.manager.create_template(
                        reserved, options, on_progress=on_progress, on_log=on_log
                    )
                    break
                except LifecycleError as e:
                    if _is_vmid_conflict(e) and attempt < self.MAX_VMID_ATTEMPTS:
                        # keep the reservation: the id is taken somewhere we cannot see
                        logger.warning(
                            f"VMID {reserved} rejected as in use, allocating another ({attempt}/{self.MAX_VMID_ATTEMPTS})"
                        )
                        reserved = None
                        continue
                    raise

            step = "persist"
            return self._persist_result(template_id, result)
        except LifecycleError as e:
            self._mark_error(template_id, str(e))
            raise
        except Exception as e:
            raise self._fail(template_id, step, e) from e
        finally:
            if reserved is not None:
                self.allocator.release(reserved)

    async def recreate(
        self,
        template_id: UUID,
        storage: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> TemplateResponse:
        """
        Rebuild a template's container in place, keeping its VMID.

        The old container is deleted first; a failure there is logged and the
        rebuild goes ahead. Templates with a parent are cloned from it again.
        """
        with self._records() as records:
            template = records.require_template(template_id)
            if template.vmid is None:
                raise TemplateValidationError(f"Template {template.name} has no container to recreate")
            if template.status == TemplateStatus.CREATING:
                raise TemplateValidationError(f"Template {template.name} is already being built")
            vmid = template.vmid
            storage = storage or template.storage
            records.update_template_status(template_id, TemplateStatusUpdate(status=TemplateStatus.CREATING))

        async def progress(pct: int, message: str) -> None:
            if on_progress:
                await maybe_await(on_progress(ProgressEvent(step="delete", progress=pct, message=message)))

        step = "validate"
        try:
            options = self._load_options(template_id, storage, stop_at_staging=False)

            step = "delete"
            await progress(0, "Deleting existing template...")
            try:
                await self.manager.delete_container_template(vmid)
            except VibespaceError as e:
                logger.warning(f"Could not delete container {vmid} before recreating, continuing: {e}")
            await progress(5, "Existing template removed")

            step = "build"
            result = await self.manager.create_template(vmid, options, on_progress=on_progress, on_log=on_log)

            step = "persist"
            return self._persist_result(template_id, result)
        except LifecycleError as e:
            self._mark_error(template_id, str(e))
            raise
        except Exception as e:
            raise self._fail(template_id, step, e) from e

    async def finalize(
        self,
        template_id: UUID,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> TemplateResponse:
        """Convert a staged template into a ready one."""
        with self._records() as records:
            template = records.require_template(template_id)
            if template.status != TemplateStatus.STAGING:
                raise TemplateValidationError(
                    f"Template {template.name} is {template.status.value}, expected staging"
                )
            if template.vmid is None:
                raise TemplateValidationError(f"Template {template.name} has no container to finalize")
            vmid, container_ip = template.vmid, template.staging_container_ip

        try:
            await self.manager.finalize_template(vmid, container_ip, on_progress=on_progress, on_log=on_log)
        except LifecycleError as e:
            self._mark_error(template_id, str(e))
            raise

        with self._records() as records:
            template = records.update_template_status(template_id, TemplateStatusUpdate(status=TemplateStatus.READY))
            return TemplateResponse.model_validate(template)

    async def get_status(self, template_id: UUID) -> TemplateStatusInfo:
        """Live hypervisor state; a record whose container vanished is cleared."""
        with self._records() as records:
            template = records.require_template(template_id)
            vmid = template.vmid
        if vmid is None:
            return TemplateStatusInfo(exists=False)

        try:
            return await self.manager.get_template_status(vmid)
        except StaleRecordError:
            logger.warning(f"Template {template_id} points at missing container {vmid}, clearing record")
            with self._records() as records:
                records.clear_hypervisor_state(template_id)
            return TemplateStatusInfo(exists=False, vmid=vmid)

    async def delete(self, template_id: UUID) -> None:
        """Delete the container (if any) and then the record. Rejected if children exist."""
        with self._records() as records:
            template = records.require_template(template_id)
            children = records.list_children(template_id)
            if children:
                names = ", ".join(child.name for child in children)
                raise TemplateValidationError(f"Template {template.name} has child templates: {names}")
            vmid = template.vmid

        if vmid is not None:
            await self.manager.delete_container_template(vmid)

        with self._records() as records:
            records.delete_template(template_id)
