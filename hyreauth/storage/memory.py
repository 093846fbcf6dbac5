from __future__ import annotations

import re
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from hyreauth.logging import get_logger
from hyreauth.storage.errors import ConstraintViolation
from hyreauth.storage.models import Principal


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a Redis-style glob (``*``, ``?``, ``[...]``, ``\\`` escapes)."""

    out: List[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1 : end]
                if body.startswith("^"):
                    body = "^" + re.escape(body[1:]).replace("\\-", "-")
                else:
                    body = re.escape(body).replace("\\-", "-")
                out.append(f"[{body}]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


class MemoryCache:
    """In-process TTL store mirroring the subset of Redis semantics the core relies on.

    Expiry is evaluated lazily against ``clock`` so tests can drive time
    explicitly. With ``honor_ttl=False`` keys never auto-expire, which models a
    store whose eviction lags behind the logical expiry of the data.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, honor_ttl: bool = True) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._honor_ttl = honor_ttl
        # key -> (value, absolute expiry or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if self._honor_ttl and expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> None:
        if seconds <= 0:
            raise ValueError(f"TTL must be positive, got {seconds}")
        with self._lock:
            self._data[key] = (value, self._clock() + int(seconds))

    async def set(self, key: str, value: str) -> None:
        """Store ``value`` without an expiry (maintenance and test fixtures only)."""
        with self._lock:
            self._data[key] = (value, None)

    async def delete(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return 0
            del self._data[key]
            return 1

    async def ttl_remaining(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            expires_at = entry[1]
            if expires_at is None:
                return -1
            # Redis rounds the millisecond TTL to the nearest second
            return max(0, int(expires_at - self._clock() + 0.5))

    async def keys_matching(self, pattern: str) -> List[str]:
        regex = _glob_to_regex(pattern)
        with self._lock:
            return [key for key in list(self._data) if regex.match(key) and self._live(key)]

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._data) if self._live(key))


class MemoryStore:
    """Minimal in-memory principal repository."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._by_email: Dict[str, str] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    async def find_by_id(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    async def find_by_identifier(self, identifier: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._by_email.get(identifier.strip().lower())
            return self.principals.get(principal_id) if principal_id else None

    async def save(self, principal: Principal) -> Principal:
        email = principal.email.strip().lower()
        with self._data_lock:
            owner = self._by_email.get(email)
            if owner is not None and owner != principal.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            previous = self.principals.get(principal.id)
            if previous is not None:
                previous_email = previous.email.strip().lower()
                if previous_email != email:
                    self._by_email.pop(previous_email, None)
            self.principals[principal.id] = principal
            self._by_email[email] = principal.id
        self.logger.debug(
            "principal_saved",
            principal_id=principal.id,
            approval_status=principal.approval_status.value,
        )
        return principal


__all__ = ["MemoryCache", "MemoryStore"]
