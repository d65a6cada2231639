from typing import Protocol, runtime_checkable

@runtime_checkable
class SweepLockPort(Protocol):
    """Non-blocking per-key mutex; ``acquire`` returns False when the key is already held."""

    async def acquire(self, key: str) -> bool: ...

    async def release(self, key: str) -> None: ...
