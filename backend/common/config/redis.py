"""Redis configuration and helpers."""
from __future__ import annotations

import os

from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_STATE_CHANNEL_PREFIX = os.getenv("REDIS_STATE_CHANNEL_PREFIX", "state")


def state_channel(stream_id: str) -> str:
    """Build pub/sub channel name for a pipeline's state stream."""
    return f"{REDIS_STATE_CHANNEL_PREFIX}:{stream_id}"


def create_redis_client(url: str | None = None) -> Redis:
    """Create a sync Redis client for mirroring state updates."""
    return Redis.from_url(url or REDIS_URL, decode_responses=True)
