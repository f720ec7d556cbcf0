"""
External integrations for the cost metering engine

- Redis cost cache for realtime aggregates and alert deduplication marks
"""

from .redis_cache import (
    RedisCostCache,
    CostCacheError,
    CacheUnavailableError,
    realtime_key,
    alert_key,
)

__all__ = [
    "RedisCostCache",
    "CostCacheError",
    "CacheUnavailableError",
    "realtime_key",
    "alert_key",
]
