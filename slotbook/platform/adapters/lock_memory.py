import asyncio
from slotbook.platform.ports.sweep_lock import SweepLockPort

class InMemorySweepLock(SweepLockPort):
    """Single-process lock; enough when one app instance runs the sweeper."""

    def __init__(self):
        self._held: set[str] = set()
        self._guard = asyncio.Lock()

    async def acquire(self, key: str) -> bool:
        async with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    async def release(self, key: str) -> None:
        async with self._guard:
            self._held.discard(key)
