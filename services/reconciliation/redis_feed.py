from __future__ import annotations

import json
import logging
from typing import Any, Dict

import redis.asyncio as aioredis

from services.reconciliation.channel import ChangeChannel
from services.reconciliation.events import decode_change
from services.scans.schema_validation import MalformedRow

logger = logging.getLogger(__name__)

DEFAULT_FEED_CHANNEL = "scan_review.changes"


async def publish_change(client: aioredis.Redis, channel: str, payload: Dict[str, Any]) -> int:
    """Producer side: push one realtime payload to every subscribed client."""
    return await client.publish(channel, json.dumps(payload, default=str))


class RedisChangeFeed:
    """
    Bridges a Redis pub/sub channel to the local ChangeChannel.
    Contract:
      - one JSON realtime payload per message
      - undecodable messages are logged and skipped, never forwarded
    """

    def __init__(
        self,
        client: aioredis.Redis,
        channel: ChangeChannel,
        *,
        feed_channel: str = DEFAULT_FEED_CHANNEL,
    ) -> None:
        self.client = client
        self.channel = channel
        self.feed_channel = feed_channel
        self.forwarded = 0
        self.skipped = 0

    @classmethod
    def from_url(cls, url: str, channel: ChangeChannel, *, feed_channel: str = DEFAULT_FEED_CHANNEL) -> "RedisChangeFeed":
        return cls(aioredis.from_url(url), channel, feed_channel=feed_channel)

    def forward(self, data: Any) -> bool:
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8", errors="replace")
        try:
            payload = json.loads(data)
            change = decode_change(payload)
        except (json.JSONDecodeError, MalformedRow, ValueError, TypeError) as e:
            self.skipped += 1
            logger.warning("skipping malformed change message: %s", e)
            return False
        self.channel.publish(change)
        self.forwarded += 1
        return True

    async def run(self) -> None:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.feed_channel)
        logger.info("listening for scan changes on %s", self.feed_channel)
        try:
            async for message in pubsub.listen():
                if not isinstance(message, dict) or message.get("type") != "message":
                    continue
                self.forward(message.get("data"))
        finally:
            await pubsub.unsubscribe(self.feed_channel)
            await pubsub.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()
