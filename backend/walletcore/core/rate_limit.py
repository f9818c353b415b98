import logging
from fastapi import Depends, HTTPException
from walletcore.config import settings
from walletcore.core.deps import require_admin
from walletcore.core.redis import get_redis
from walletcore.models.user import User

logger = logging.getLogger(__name__)


async def check_rate_limit(user_id: int, action: str) -> None:
    """Fixed-window counter per (admin, action). Raises 429 when exceeded."""
    redis = await get_redis()
    window = settings.ADMIN_RATE_WINDOW_SECONDS
    key = f"ratelimit:{action}:{user_id}"
    count = await redis.incr(key)
    if count == 1:
        await redis.expire(key, window)
    if count > settings.ADMIN_RATE_LIMIT:
        ttl = await redis.ttl(key)
        retry_after = ttl if ttl and ttl > 0 else window
        logger.warning("Rate limit exceeded: user=%s action=%s count=%s", user_id, action, count)
        raise HTTPException(
            429,
            "Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )


def rate_limited(action: str, role_dependency=require_admin):
    """Role dependency that also counts the call against `action`'s window."""
    async def _dep(admin: User = Depends(role_dependency)) -> User:
        await check_rate_limit(admin.id, action)
        return admin
    return _dep
