"""Redis mirror for state updates."""
from __future__ import annotations

import json
import logging

from redis.exceptions import RedisError

from common.config import create_redis_client, state_channel

logger = logging.getLogger(__name__)


class StatePublisher:
    """Publishes state updates to ``state:<stream_id>`` for out-of-process consumers."""

    def __init__(self, url: str | None = None):
        self.redis = create_redis_client(url)

    def publish(self, stream_id: str, payload: dict) -> bool:
        try:
            self.redis.publish(state_channel(stream_id), json.dumps(payload))
            return True
        except RedisError as exc:
            logger.warning("[%s] Redis publish failed: %s", stream_id, exc)
            return False

    def close(self) -> None:
        try:
            self.redis.close()
        except Exception:
            logger.debug("Ignoring error while closing Redis client", exc_info=True)
