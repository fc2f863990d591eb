import asyncio
import json

import redis

from tripsync.config import BROADCAST_CHANNEL, REDIS_URL
from tripsync.logging_config import get_logger
from tripsync.schemas import DashboardSnapshot

logger = get_logger("broadcast", "broadcast.log")


class DashboardBroadcaster:
    """Publishes dashboard snapshots on a Redis pub/sub channel."""

    def __init__(self, client=None, channel: str = BROADCAST_CHANNEL):
        self._client = client if client is not None else redis.from_url(REDIS_URL, decode_responses=False)
        self.channel = channel

    async def publish(self, snapshot: DashboardSnapshot) -> int:
        json_str = json.dumps(snapshot.to_dict(), ensure_ascii=False)

        # Publish inside executor (non-blocking)
        receivers = await asyncio.get_event_loop().run_in_executor(
            None,
            self._client.publish,
            self.channel,
            json_str,
        )

        logger.info(f"[✓] Broadcasted to {self.channel}: {snapshot.timestamp} ({receivers} subscribers)")
        return receivers
