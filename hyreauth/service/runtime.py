from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from hyreauth.config import Settings, get_settings, reset_settings_cache
from hyreauth.logging import get_logger
from hyreauth.service.auth import AuthService, PrincipalRepository
from hyreauth.service.notifications import ChallengeNotifier, EmailService
from hyreauth.service.otp import OtpChallengeService
from hyreauth.service.revocation import RevocationRegistry
from hyreauth.service.sessions import SessionTeardownService
from hyreauth.service.tokens import TokenService
from hyreauth.storage.memory import MemoryCache, MemoryStore
from hyreauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the singleton service graph for the authentication core."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[PrincipalRepository] = None,
        notifier: Optional[ChallengeNotifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.cache: Union[RedisCache, MemoryCache] = self._build_cache(clock)
        self.store = store or MemoryStore()

        self.otp = OtpChallengeService(self.cache, self.settings.otp_policy(), clock=clock)
        self.tokens = TokenService(self.settings.token_config(), clock=clock)
        self.revocations = RevocationRegistry(self.cache, clock=clock)
        self.teardown = SessionTeardownService(self.cache)
        self.notifier = notifier or EmailService.from_settings(self.settings, clock=clock)
        self.auth = AuthService(
            self.store,
            self.otp,
            self.tokens,
            self.revocations,
            self.teardown,
            self.notifier,
            self.settings,
            clock=clock,
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _build_cache(self, clock: Callable[[], float]) -> Union[RedisCache, MemoryCache]:
        if self.settings.use_memory_cache:
            return MemoryCache(clock=clock)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for OTP challenges, token revocation and session state; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; challenges and revocations "
                "are in-memory only and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(clock=clock)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
