# backend/vibespace/services/event_broadcaster.py
"""
Template build progress broadcasting via Redis pub/sub.

Progress milestones and raw provisioning output are published so the API
layer can forward them to connected clients. Publishing is best-effort: a
Redis outage never fails a build.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from pydantic import BaseModel

from vibespace.schemas.proxmox import LogEvent, ProgressEvent

logger = logging.getLogger(__name__)

# Redis channel names
EVENTS_CHANNEL = "vibespace:events"
TEMPLATE_CHANNEL_PREFIX = "vibespace:template:"
TEMPLATE_LOG_CHANNEL_PREFIX = "vibespace:template-log:"


class RealtimeEvent(BaseModel):
    """Event payload for real-time broadcasts."""
    event_type: str
    template_id: Optional[str] = None
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: str


class ProgressBroadcaster:
    """
    Publishes template events.

    Events are published to:
    - vibespace:events (status changes for all templates)
    - vibespace:template:{id} (progress milestones for one template)
    - vibespace:template-log:{id} (raw stdout/stderr chunks)
    """

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
            logger.info("ProgressBroadcaster connected to Redis")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def _publish(self, channel: str, payload: str) -> None:
        if self._redis is None:
            await self.connect()
        try:
            await self._redis.publish(channel, payload)
        except redis.RedisError as e:
            logger.error(f"Failed to publish to {channel}: {e}")

    async def broadcast(
        self,
        event_type: str,
        message: str,
        template_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = RealtimeEvent(
            event_type=event_type,
            template_id=str(template_id) if template_id else None,
            message=message,
            data=data,
            timestamp=datetime.utcnow().isoformat(),
        )
        payload = event.model_dump_json()
        await self._publish(EVENTS_CHANNEL, payload)
        if template_id:
            await self._publish(f"{TEMPLATE_CHANNEL_PREFIX}{template_id}", payload)

    def progress_sink(self, template_id: str) -> Callable[[ProgressEvent], Any]:
        """Progress callback for one template build."""
        async def sink(event: ProgressEvent) -> None:
            await self.broadcast(
                "template.progress", event.message, template_id=template_id, data=event.model_dump()
            )
        return sink

    def log_sink(self, template_id: str) -> Callable[[LogEvent], Any]:
        """Raw output callback for one template build."""
        async def sink(event: LogEvent) -> None:
            await self._publish(f"{TEMPLATE_LOG_CHANNEL_PREFIX}{template_id}", event.model_dump_json())
        return sink
