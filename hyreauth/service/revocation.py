from __future__ import annotations

import hashlib
import math
import time
from typing import Callable

from hyreauth.logging import get_logger, token_fingerprint
from hyreauth.storage.redis_cache import TTLStore, escape_glob

logger = get_logger(__name__)

REVOCATION_PREFIX = "blacklist:token:"
REVOKED_MARKER = "revoked"


def revocation_key(token: str) -> str:
    """Registry key for ``token``; only the SHA-256 digest is ever stored."""
    digest = hashlib.sha256(token.encode()).hexdigest()
    return f"{REVOCATION_PREFIX}{digest}"


class RevocationRegistry:
    """Blacklist of tokens invalidated before their natural expiry.

    Entries live exactly as long as the token would have, so storage stays
    proportional to the number of outstanding revoked tokens.
    """

    def __init__(self, cache: TTLStore, *, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self._clock = clock

    async def revoke(self, token: str, natural_expiry: float) -> bool:
        # Round up so a token with a fractional second left is still recorded
        ttl = max(0, math.ceil(natural_expiry - self._clock()))
        key = revocation_key(token)
        if ttl <= 0:
            logger.info("token_revocation_skipped_expired", fingerprint=token_fingerprint(token))
            return False
        await self.cache.set_with_ttl(key, REVOKED_MARKER, ttl)
        logger.info("token_revoked", fingerprint=token_fingerprint(token), ttl=ttl)
        return True

    async def is_revoked(self, token: str) -> bool:
        return await self.cache.get(revocation_key(token)) is not None

    async def unrevoke(self, token: str) -> bool:
        return bool(await self.cache.delete(revocation_key(token)))

    async def _entries(self) -> list[str]:
        return await self.cache.keys_matching(f"{escape_glob(REVOCATION_PREFIX)}*")

    async def count(self) -> int:
        return len(await self._entries())

    async def sweep_stale(self, *, dry_run: bool = False) -> int:
        """Remove entries that carry no expiry or have none left; ``dry_run`` only counts them."""
        removed = 0
        for key in await self._entries():
            if await self.cache.ttl_remaining(key) in (-1, 0):
                removed += 1 if dry_run else await self.cache.delete(key)
        if removed and not dry_run:
            logger.info("revocation_sweep_completed", removed=removed)
        return removed


__all__ = ["REVOCATION_PREFIX", "RevocationRegistry", "revocation_key"]
