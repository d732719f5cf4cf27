"""Background tasks for feed cache pre-warming"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from pydantic import BaseModel

from .config import PREWARM_BATCH_DELAY, PREWARM_BATCH_SIZE, PREWARM_REFRESH_INTERVAL
from .models import FeedType, GeneratedFeed

if TYPE_CHECKING:
    from .cache import FeedCache

logger = logging.getLogger(__name__)


class PrewarmReport(BaseModel):
    warmed: int = 0
    skipped: int = 0
    failed: int = 0


async def _warm_one(
    cache: FeedCache,
    user_id: str,
    feed_type: FeedType,
    generate: Callable[[str, FeedType], Awaitable[GeneratedFeed]],
) -> bool:
    """Generate and cache one feed. Returns False when it was already fresh."""
    if await cache.is_fresh(user_id, feed_type):
        return False
    feed = await generate(user_id, feed_type)
    await cache.put_feed(feed)
    return True


async def prewarm_feeds(
    cache: FeedCache,
    pairs: list[tuple[str, FeedType]],
    generate: Callable[[str, FeedType], Awaitable[GeneratedFeed]],
    batch_size: int = PREWARM_BATCH_SIZE,
    delay: float = PREWARM_BATCH_DELAY,
) -> PrewarmReport:
    """
    Generate and cache feeds for (user, feed type) pairs in batches.

    Pairs with a fresh cached feed are skipped. A failure for one pair is
    logged and counted without affecting the rest of the batch.
    """
    report = PrewarmReport()
    logger.info(f"Pre-warming {len(pairs)} feeds...")

    for start in range(0, len(pairs), batch_size):
        batch = pairs[start:start + batch_size]
        results = await asyncio.gather(
            *(_warm_one(cache, user_id, feed_type, generate) for user_id, feed_type in batch),
            return_exceptions=True,
        )
        for (user_id, feed_type), result in zip(batch, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                report.failed += 1
                logger.warning(f"Could not pre-warm {feed_type.value} feed for {user_id}: {result}")
            elif result:
                report.warmed += 1
            else:
                report.skipped += 1

        # Small pause between batches to spread load
        if start + batch_size < len(pairs):
            await asyncio.sleep(delay)

    logger.info(
        f"Pre-warm finished: {report.warmed} warmed, "
        f"{report.skipped} already fresh, {report.failed} failed"
    )
    return report


async def prewarm_refresh_loop(
    cache: FeedCache,
    get_pairs: Callable[[], Awaitable[list[tuple[str, FeedType]]]],
    generate: Callable[[str, FeedType], Awaitable[GeneratedFeed]],
    interval: float = PREWARM_REFRESH_INTERVAL,
):
    """Background loop that pre-warms the feeds of active users every 10 minutes"""
    logger.info("Starting background pre-warm loop")

    try:
        while True:
            try:
                pairs = await get_pairs()
                await prewarm_feeds(cache, pairs, generate)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in pre-warm cycle: {e}", exc_info=True)

            await asyncio.sleep(interval)

    except asyncio.CancelledError:
        logger.info("Background pre-warm loop cancelled")
        raise
