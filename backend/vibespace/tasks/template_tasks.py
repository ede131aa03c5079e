# backend/vibespace/tasks/template_tasks.py
"""Async template lifecycle tasks using Dramatiq."""
import asyncio
import logging
from typing import Any, Awaitable, Callable
from uuid import UUID

import dramatiq

from vibespace.context import AppContext, build_app_context
from vibespace.services.errors import VibespaceError

logger = logging.getLogger(__name__)


async def _with_context(work: Callable[[AppContext], Awaitable[Any]]) -> Any:
    context = build_app_context()
    await context.broadcaster.connect()
    try:
        return await work(context)
    finally:
        await context.close()


def run_with_context(work: Callable[[AppContext], Awaitable[Any]]) -> Any:
    """Run one workflow on a fresh event loop with freshly wired services."""
    return asyncio.run(_with_context(work))


@dramatiq.actor(max_retries=3, min_backoff=1000)
def provision_template_task(template_id: str, stop_at_staging: bool = False):
    """
    Async task to build a template container.
    Progress and raw provisioning output are published to the template's channels.
    """
    logger.info(f"Starting async provisioning for template {template_id}")

    async def work(context: AppContext):
        broadcaster = context.broadcaster
        try:
            template = await context.lifecycle.provision(
                UUID(template_id),
                stop_at_staging=stop_at_staging,
                on_progress=broadcaster.progress_sink(template_id),
                on_log=broadcaster.log_sink(template_id),
            )
        except VibespaceError as e:
            logger.error(f"Provisioning of template {template_id} failed: {e}")
            await broadcaster.broadcast("template.failed", str(e), template_id=template_id)
            return
        await broadcaster.broadcast(
            "template.status",
            f"Template {template.name} is {template.status.value}",
            template_id=template_id,
            data={"status": template.status.value, "vmid": template.vmid},
        )

    run_with_context(work)


@dramatiq.actor(max_retries=3, min_backoff=1000)
def recreate_template_task(template_id: str):
    """Async task to rebuild a template's container at its existing VMID."""
    logger.info(f"Starting async recreate for template {template_id}")

    async def work(context: AppContext):
        broadcaster = context.broadcaster
        try:
            template = await context.lifecycle.recreate(
                UUID(template_id),
                on_progress=broadcaster.progress_sink(template_id),
                on_log=broadcaster.log_sink(template_id),
            )
        except VibespaceError as e:
            logger.error(f"Recreating template {template_id} failed: {e}")
            await broadcaster.broadcast("template.failed", str(e), template_id=template_id)
            return
        await broadcaster.broadcast(
            "template.status",
            f"Template {template.name} is {template.status.value}",
            template_id=template_id,
            data={"status": template.status.value, "vmid": template.vmid},
        )

    run_with_context(work)


@dramatiq.actor(max_retries=3, min_backoff=1000)
def finalize_template_task(template_id: str):
    """Async task to convert a staged template into a ready one."""
    logger.info(f"Starting async finalize for template {template_id}")

    async def work(context: AppContext):
        broadcaster = context.broadcaster
        try:
            template = await context.lifecycle.finalize(
                UUID(template_id),
                on_progress=broadcaster.progress_sink(template_id),
                on_log=broadcaster.log_sink(template_id),
            )
        except VibespaceError as e:
            logger.error(f"Finalizing template {template_id} failed: {e}")
            await broadcaster.broadcast("template.failed", str(e), template_id=template_id)
            return
        await broadcaster.broadcast(
            "template.status",
            f"Template {template.name} is {template.status.value}",
            template_id=template_id,
            data={"status": template.status.value, "vmid": template.vmid},
        )

    run_with_context(work)


@dramatiq.actor(max_retries=3, min_backoff=1000)
def delete_template_task(template_id: str):
    """Async task to delete a template and its container."""
    logger.info(f"Starting async delete for template {template_id}")

    async def work(context: AppContext):
        try:
            await context.lifecycle.delete(UUID(template_id))
        except VibespaceError as e:
            logger.error(f"Deleting template {template_id} failed: {e}")
            await context.broadcaster.broadcast("template.failed", str(e), template_id=template_id)
            return
        await context.broadcaster.broadcast("template.deleted", "Template deleted", template_id=template_id)

    run_with_context(work)
