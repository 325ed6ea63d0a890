# apps/api_gateway/main.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Set

from fastapi import FastAPI

from apps.api_gateway.app_factory import create_app
from apps.common.settings import load_settings
from apps.common.stores import build_stores
from services.reconciliation.cache import ReconciliationCache
from services.reconciliation.channel import ChangeChannel
from services.reconciliation.redis_feed import RedisChangeFeed
from services.review.coordinator import ValidationCoordinator

logger = logging.getLogger(__name__)

settings = load_settings()
_background: Set[asyncio.Task] = set()


def _refresh_after_errors() -> None:
    task = asyncio.get_running_loop().create_task(coordinator.refresh())
    _background.add(task)
    task.add_done_callback(_background.discard)


channel = ChangeChannel(on_degraded=_refresh_after_errors)
# the in-memory backend echoes its own writes on the channel; the real store pushes through Redis
stores = build_stores(settings, channel=channel if settings.store_backend == "memory" else None)
cache = ReconciliationCache(off_domain_patterns=settings.off_domain_patterns)
coordinator = ValidationCoordinator(
    stores.scans,
    stores.ledger,
    cache,
    step_timeout_s=settings.step_timeout_s,
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if not await coordinator.refresh():
        logger.warning("starting with an empty cache; initial refresh failed")

    tasks: List[asyncio.Task] = [asyncio.create_task(channel.run(cache.handle))]
    feed: Optional[RedisChangeFeed] = None
    if settings.store_backend != "memory":
        feed = RedisChangeFeed.from_url(settings.redis_url, channel, feed_channel=settings.feed_channel)
        tasks.append(asyncio.create_task(feed.run()))
    try:
        yield
    finally:
        channel.close()
        for t in tasks[1:]:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if feed is not None:
            await feed.aclose()
        await stores.aclose()


app = create_app(coordinator=coordinator, cache=cache, lifespan=lifespan)
