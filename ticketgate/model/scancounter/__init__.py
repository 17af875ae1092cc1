# model/scancounter/__init__.py
from typing import Optional
import redis.asyncio as redis

from ...errors import ConfigurationError

BACKENDS = ("pg", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_counter(backend: str = "pg", *, r: Optional[redis.Redis] = None):
    backend = (backend or "pg").lower()
    if backend == "pg":
        from ._postgres import ScanCounter
        return ScanCounter()
    if backend == "redis":
        if r is None:
            raise ConfigurationError(
                "ScanCounter(redis) requires r=redis.Redis"
            )
        from ._redis import ScanCounter
        return ScanCounter(r=r)
    raise ConfigurationError(f"unknown scan counter backend: {backend!r}")


__all__ = ["new_counter", "BACKENDS"]
