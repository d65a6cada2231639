import json
import logging
from redis.asyncio import from_url as redis_from_url
from slotbook.platform.ports.event_bus import EventBusPort
from slotbook.core.config import settings

log = logging.getLogger("bus.redis")

class RedisEventBus(EventBusPort):
    """Appends envelopes to one Redis stream; consumers filter on ``event_type`` and ``org_id``."""

    def __init__(self, url: str | None = None, stream: str | None = None):
        url = url or settings.REDIS_URL
        if not url:
            raise RuntimeError("REDIS_URL not configured")
        self.redis = redis_from_url(url, encoding="utf-8", decode_responses=True)
        self.stream = stream or settings.REDIS_STREAM or "slotbook.events"

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        entry = {
            "topic": topic,
            "key": key,
            "event_type": value.get("event_type", ""),
            "org_id": value.get("org_id", ""),
            "value": json.dumps(value, default=str),
            "headers": json.dumps(headers or {}),
        }
        entry_id = await self.redis.xadd(self.stream, entry, maxlen=settings.REDIS_STREAM_MAXLEN, approximate=True)
        log.debug("XADD %s id=%s %s key=%s", self.stream, entry_id, entry["event_type"], key)
