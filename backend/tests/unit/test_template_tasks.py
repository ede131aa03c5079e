# backend/tests/unit/test_template_tasks.py
"""Unit tests for the Dramatiq template actors."""
import uuid

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from vibespace.models.template import TemplateStatus
from vibespace.services.errors import LifecycleError
from vibespace.tasks.template_tasks import (
    delete_template_task,
    finalize_template_task,
    provision_template_task,
    recreate_template_task,
)

TEMPLATE_ID = str(uuid.uuid4())


@pytest.fixture
def context():
    context = MagicMock()
    context.close = AsyncMock()
    context.broadcaster.connect = AsyncMock()
    context.broadcaster.broadcast = AsyncMock()
    template = MagicMock(vmid=500, status=TemplateStatus.READY)
    template.name = "Base"
    context.lifecycle.provision = AsyncMock(return_value=template)
    context.lifecycle.finalize = AsyncMock(return_value=template)
    context.lifecycle.recreate = AsyncMock(return_value=template)
    context.lifecycle.delete = AsyncMock()
    with patch("vibespace.tasks.template_tasks.build_app_context", return_value=context):
        yield context


class TestTemplateTasks:
    """Tests for the template actors."""

    def test_provision_broadcasts_status(self, context):
        provision_template_task.fn(TEMPLATE_ID, stop_at_staging=True)

        call = context.lifecycle.provision.call_args
        assert call.args == (uuid.UUID(TEMPLATE_ID),)
        assert call.kwargs["stop_at_staging"] is True
        event_type = context.broadcaster.broadcast.call_args.args[0]
        assert event_type == "template.status"
        assert context.broadcaster.broadcast.call_args.kwargs["data"] == {"status": "ready", "vmid": 500}
        context.close.assert_awaited_once()

    def test_provision_failure_broadcasts(self, context):
        context.lifecycle.provision = AsyncMock(side_effect=LifecycleError(TEMPLATE_ID, "provision", "boom"))

        provision_template_task.fn(TEMPLATE_ID)

        assert context.broadcaster.broadcast.call_args.args[0] == "template.failed"
        assert "boom" in context.broadcaster.broadcast.call_args.args[1]
        context.close.assert_awaited_once()

    def test_unexpected_error_closes_context(self, context):
        context.lifecycle.provision = AsyncMock(side_effect=RuntimeError("bug"))
        with pytest.raises(RuntimeError):
            provision_template_task.fn(TEMPLATE_ID)
        context.close.assert_awaited_once()

    def test_finalize(self, context):
        finalize_template_task.fn(TEMPLATE_ID)
        context.lifecycle.finalize.assert_awaited_once()
        assert context.broadcaster.broadcast.call_args.args[0] == "template.status"

    def test_delete(self, context):
        delete_template_task.fn(TEMPLATE_ID)
        context.lifecycle.delete.assert_awaited_once_with(uuid.UUID(TEMPLATE_ID))
        assert context.broadcaster.broadcast.call_args.args[0] == "template.deleted"

    def test_recreate_broadcasts_status(self, context):
        recreate_template_task.fn(TEMPLATE_ID)

        assert context.lifecycle.recreate.call_args.args == (uuid.UUID(TEMPLATE_ID),)
        assert context.broadcaster.broadcast.call_args.kwargs["data"] == {"status": "ready", "vmid": 500}
        context.close.assert_awaited_once()

    def test_recreate_failure_broadcasts(self, context):
        context.lifecycle.recreate = AsyncMock(side_effect=LifecycleError(TEMPLATE_ID, "build", "disk full"))

        recreate_template_task.fn(TEMPLATE_ID)

        assert context.broadcaster.broadcast.call_args.args[0] == "template.failed"
        assert "disk full" in context.broadcaster.broadcast.call_args.args[1]
