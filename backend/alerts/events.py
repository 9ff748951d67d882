"""
Change Events — publish PS status transitions to Redis pub/sub.

Published only after the audit run's snapshots are committed, so a
subscriber never hears about a change that was rolled back.
"""

import json

import redis.asyncio as aioredis
import structlog

from audit.differ import StatusChangeEvent
from core.config import get_settings

logger = structlog.get_logger()

STATUS_CHANGE_CHANNEL = "ps-audit:status-changes"


async def publish_status_changes(events: list[StatusChangeEvent], redis_url: str | None = None) -> int:
    """
    Publish each status change as a JSON message.
    Returns number of subscribers notified.
    """
    if not events:
        return 0

    redis = aioredis.from_url(redis_url or get_settings().redis_url)
    try:
        total_subs = 0
        for event in events:
            payload = json.dumps({"type": "ps_status_change", "payload": event.as_dict()})
            total_subs += await redis.publish(STATUS_CHANGE_CHANNEL, payload)
        logger.info("audit.events.published", events=len(events), subscribers=total_subs)
        return total_subs
    finally:
        await redis.aclose()
