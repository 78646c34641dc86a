"""Cache invalidation hook.

The read-side caches live in the API tier; the engine only announces which
user's data changed. This default implementation records the signal in the
log for deployments without a shared cache.
"""

from finsync.logging_config import get_logger

logger = get_logger("cache")


class LoggingCacheInvalidator:
    def invalidate_cache(self, user_id: str, scope: str) -> None:
        logger.debug(f"Cache invalidated for user {user_id} (scope={scope})")
