from slotbook.core.config import settings
from slotbook.platform.ports.event_bus import EventBusPort
from slotbook.platform.adapters.bus_noop import NoopEventBus
from slotbook.platform.adapters.bus_redis import RedisEventBus
from slotbook.platform.ports.notifier import NotifierPort
from slotbook.platform.adapters.notify_noop import NoopNotifier
from slotbook.platform.adapters.notify_webhook import WebhookNotifier
from slotbook.platform.ports.sweep_lock import SweepLockPort
from slotbook.platform.adapters.lock_memory import InMemorySweepLock
from slotbook.platform.adapters.lock_redis import RedisSweepLock

class ProviderRegistry:
    _event_bus: EventBusPort | None = None
    _notifier: NotifierPort | None = None
    _sweep_lock: SweepLockPort | None = None

    @classmethod
    def event_bus(cls) -> EventBusPort:
        if cls._event_bus is None:
            prov = (settings.EVENT_BUS_PROVIDER or "noop").lower()
            if prov == "redis":
                cls._event_bus = RedisEventBus()
            else:
                cls._event_bus = NoopEventBus()
        return cls._event_bus

    @classmethod
    def notifier(cls) -> NotifierPort:
        if cls._notifier is None:
            prov = (settings.NOTIFIER_PROVIDER or "noop").lower()
            if prov == "webhook":
                cls._notifier = WebhookNotifier()
            else:
                cls._notifier = NoopNotifier()
        return cls._notifier

    @classmethod
    def sweep_lock(cls) -> SweepLockPort:
        if cls._sweep_lock is None:
            prov = (settings.SWEEP_LOCK_PROVIDER or "memory").lower()
            if prov == "redis":
                cls._sweep_lock = RedisSweepLock()
            else:
                cls._sweep_lock = InMemorySweepLock()
        return cls._sweep_lock

registry = ProviderRegistry()
