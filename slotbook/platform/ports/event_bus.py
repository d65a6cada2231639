from typing import Protocol, runtime_checkable

@runtime_checkable
class EventBusPort(Protocol):
    """Fan-out of committed outbox events to other services (dashboards, live queue screens)."""

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...
