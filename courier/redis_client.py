import redis.asyncio as redis_async

from courier.config import settings

_redis_client = None
_redis_url = None


def get_redis(redis_url: str | None = None, socket_timeout_seconds: float | None = None):
    """Return the shared asyncio Redis client, recreating it if the URL changed."""
    global _redis_client, _redis_url

    redis_url = redis_url or settings.redis_url
    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
        )

    return _redis_client


async def close_redis() -> None:
    global _redis_client, _redis_url

    if _redis_client is None:
        return
    await _redis_client.aclose()
    _redis_client = None
    _redis_url = None
