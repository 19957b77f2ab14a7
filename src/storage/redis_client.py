"""Redis connection used as the job broker."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from src.core.config import get_settings


@lru_cache(maxsize=1)
def get_client() -> Redis:
    # Queue keys and job ids are read back as str.
    return Redis.from_url(get_settings().redis_url, decode_responses=True, health_check_interval=30)


def ping_redis(client: Optional[Redis] = None) -> Tuple[bool, Optional[str]]:
    try:
        (client or get_client()).ping()
    except RedisError as exc:
        return False, str(exc)
    return True, None
