import logging
import uuid
from redis.asyncio import from_url as redis_from_url
from slotbook.platform.ports.sweep_lock import SweepLockPort
from slotbook.core.config import settings

log = logging.getLogger("lock.redis")

# delete only if we still own the key
_RELEASE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

class RedisSweepLock(SweepLockPort):
    def __init__(self):
        if not settings.REDIS_URL:
            raise RuntimeError("REDIS_URL not configured")
        self.redis = redis_from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        self.ttl = settings.SWEEP_LOCK_TTL_SECONDS
        self.token = uuid.uuid4().hex

    async def acquire(self, key: str) -> bool:
        ok = await self.redis.set(f"slotbook:sweep:{key}", self.token, nx=True, ex=self.ttl)
        return bool(ok)

    async def release(self, key: str) -> None:
        await self.redis.eval(_RELEASE, 1, f"slotbook:sweep:{key}", self.token)
