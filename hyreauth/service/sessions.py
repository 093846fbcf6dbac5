from __future__ import annotations

from typing import List

from hyreauth.logging import get_logger
from hyreauth.service.errors import ServiceUnavailableError
from hyreauth.storage.redis_cache import TTLStore, escape_glob

logger = get_logger(__name__)

# Namespaces holding per-principal state that can be rebuilt or expires anyway
PRINCIPAL_NAMESPACES = (
    "user",
    "session",
    "cache:user",
    "rate_limit",
    "temp_booking",
    "notifications",
)
MAINTENANCE_NAMESPACES = ("session", "temp_booking", "rate_limit")


def teardown_patterns(principal_id: str, identifier: str) -> List[str]:
    pid = escape_glob(principal_id)
    ident = escape_glob(identifier.strip().lower())
    patterns = [f"otp:email:{ident}", f"otp:lock:{ident}"]
    patterns.extend(f"{namespace}:{pid}:*" for namespace in PRINCIPAL_NAMESPACES)
    return patterns


class SessionTeardownService:
    """Best-effort fan-out delete of everything cached for a principal."""

    def __init__(self, cache: TTLStore) -> None:
        self.cache = cache

    async def _delete_matching(self, pattern: str) -> int:
        deleted = 0
        for key in await self.cache.keys_matching(pattern):
            deleted += await self.cache.delete(key)
        return deleted

    async def clear_all_for(self, principal_id: str, identifier: str) -> int:
        deleted = 0
        failures = 0
        for pattern in teardown_patterns(principal_id, identifier):
            try:
                deleted += await self._delete_matching(pattern)
            except ServiceUnavailableError as exc:
                failures += 1
                logger.warning(
                    "session_teardown_pattern_failed",
                    principal_id=principal_id,
                    pattern=pattern,
                    error=exc.message,
                )
        logger.info(
            "session_teardown_completed",
            principal_id=principal_id,
            deleted=deleted,
            failed_patterns=failures,
        )
        return deleted

    async def sweep_expired(self, *, dry_run: bool = False) -> int:
        """Delete session-scoped keys whose TTL has run out but are still visible."""
        removed = 0
        for namespace in MAINTENANCE_NAMESPACES:
            for key in await self.cache.keys_matching(f"{namespace}:*"):
                if await self.cache.ttl_remaining(key) == 0:
                    removed += 1 if dry_run else await self.cache.delete(key)
        if removed and not dry_run:
            logger.info("session_sweep_completed", removed=removed)
        return removed


__all__ = ["SessionTeardownService", "teardown_patterns"]
