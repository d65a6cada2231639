import json
import logging
from slotbook.platform.ports.event_bus import EventBusPort

log = logging.getLogger("bus.noop")

class NoopEventBus(EventBusPort):
    """Logs each envelope and keeps it in ``published``; used in local runs and tests."""

    def __init__(self):
        self.published: list[dict] = []

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        self.published.append({"topic": topic, "key": key, "value": value, "headers": headers or {}})
        log.info("[NOOP BUS] %s %s key=%s %s", topic, value.get("event_type", "-"), key, json.dumps(value.get("payload", {}), default=str))
