# backend/vibespace/tasks/__init__.py
"""Dramatiq actors. Importing this package configures the Redis broker."""
import dramatiq
from dramatiq.brokers.redis import RedisBroker

from vibespace.config import get_settings

dramatiq.set_broker(RedisBroker(url=get_settings().redis_url))
