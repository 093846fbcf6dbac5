from __future__ import annotations

import hmac
import math
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from hyreauth.config import OtpPolicy
from hyreauth.logging import get_logger
from hyreauth.storage.models import ChallengeRecord, DeliveryChannel
from hyreauth.storage.redis_cache import TTLStore, escape_glob

logger = get_logger(__name__)

OTP_KEY_PREFIX = "otp:email:"
OTP_LOCK_PREFIX = "otp:lock:"


def challenge_key(identifier: str) -> str:
    return f"{OTP_KEY_PREFIX}{identifier}"


def lock_key(identifier: str) -> str:
    return f"{OTP_LOCK_PREFIX}{identifier}"


class ChallengeFailure(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    INVALID_CODE = "invalid_code"


_REASONS = {
    ChallengeFailure.NOT_FOUND: "No OTP found for this email",
    ChallengeFailure.EXPIRED: "OTP has expired",
    ChallengeFailure.ATTEMPTS_EXCEEDED: "Maximum verification attempts exceeded",
}


@dataclass(frozen=True)
class ChallengeIssue:
    identifier: str
    code: str
    expires_at: float
    delivery_channel: DeliveryChannel = DeliveryChannel.EMAIL


@dataclass(frozen=True)
class ChallengeVerification:
    valid: bool
    reason: Optional[str] = None
    failure: Optional[ChallengeFailure] = None

    @classmethod
    def ok(cls) -> "ChallengeVerification":
        return cls(valid=True)

    @classmethod
    def failed(cls, failure: ChallengeFailure, reason: Optional[str] = None) -> "ChallengeVerification":
        return cls(valid=False, reason=reason or _REASONS[failure], failure=failure)


class OtpChallengeService:
    """Issues and verifies one-time codes held in the TTL store.

    A challenge lives under ``otp:email:{identifier}`` as a JSON record with its
    own ``expires_at``; the store TTL mirrors that value and is never extended
    by a failed attempt. Expiry is always re-checked against the record so
    correctness does not depend on the store evicting keys on time.
    """

    def __init__(
        self,
        cache: TTLStore,
        policy: Optional[OtpPolicy] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.policy = policy or OtpPolicy()
        self._clock = clock

    def generate_code(self) -> str:
        length = self.policy.code_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    @staticmethod
    def _remaining_ttl(expires_at: float, now: float) -> int:
        return max(1, math.floor(expires_at - now))

    async def issue(
        self, identifier: str, channel: DeliveryChannel = DeliveryChannel.EMAIL
    ) -> ChallengeIssue:
        """Create a fresh challenge, replacing any previous one for ``identifier``."""
        now = self._clock()
        expires_at = now + self.policy.ttl_seconds
        record = ChallengeRecord(
            code=self.generate_code(),
            expires_at=expires_at,
            attempts=0,
            delivery_channel=channel,
        )
        await self.cache.delete(lock_key(identifier))
        await self.cache.set_with_ttl(
            challenge_key(identifier), record.to_json(), self.policy.ttl_seconds
        )
        logger.info(
            "otp_issued",
            identifier=identifier,
            expires_at=expires_at,
            channel=channel.value,
        )
        return ChallengeIssue(
            identifier=identifier,
            code=record.code,
            expires_at=expires_at,
            delivery_channel=channel,
        )

    async def _load(self, identifier: str) -> Optional[ChallengeRecord]:
        key = challenge_key(identifier)
        raw = await self.cache.get(key)
        if raw is None:
            return None
        try:
            return ChallengeRecord.from_json(raw)
        except ValueError as exc:
            logger.warning("otp_record_corrupt", identifier=identifier, error=str(exc))
            await self.cache.delete(key)
            return None

    async def _load_live(self, identifier: str) -> Optional[ChallengeRecord]:
        record = await self._load(identifier)
        if record is not None and self._clock() > record.expires_at:
            await self.cache.delete(challenge_key(identifier))
            return None
        return record

    async def _is_locked(self, identifier: str) -> bool:
        key = lock_key(identifier)
        raw = await self.cache.get(key)
        if raw is None:
            return False
        try:
            locked_until = float(raw)
        except ValueError:
            return True
        if self._clock() > locked_until:
            await self.cache.delete(key)
            return False
        return True

    async def verify(self, identifier: str, candidate: str) -> ChallengeVerification:
        if await self._is_locked(identifier):
            return ChallengeVerification.failed(ChallengeFailure.ATTEMPTS_EXCEEDED)

        key = challenge_key(identifier)
        record = await self._load(identifier)
        if record is None:
            return ChallengeVerification.failed(ChallengeFailure.NOT_FOUND)

        now = self._clock()
        if now > record.expires_at:
            await self.cache.delete(key)
            logger.info("otp_expired", identifier=identifier)
            return ChallengeVerification.failed(ChallengeFailure.EXPIRED)

        if record.attempts >= self.policy.max_attempts:
            await self.cache.delete(key)
            await self.cache.set_with_ttl(
                lock_key(identifier),
                repr(record.expires_at),
                self._remaining_ttl(record.expires_at, now),
            )
            logger.warning("otp_attempts_exceeded", identifier=identifier)
            return ChallengeVerification.failed(ChallengeFailure.ATTEMPTS_EXCEEDED)

        if hmac.compare_digest(record.code.encode(), str(candidate).strip().encode()):
            await self.cache.delete(key)
            logger.info("otp_verified", identifier=identifier)
            return ChallengeVerification.ok()

        record.attempts += 1
        remaining = max(0, self.policy.max_attempts - record.attempts)
        await self.cache.set_with_ttl(
            key, record.to_json(), self._remaining_ttl(record.expires_at, now)
        )
        logger.info("otp_mismatch", identifier=identifier, remaining_attempts=remaining)
        return ChallengeVerification.failed(
            ChallengeFailure.INVALID_CODE,
            f"Invalid OTP code. {remaining} attempts remaining",
        )

    async def clear(self, identifier: str) -> None:
        await self.cache.delete(challenge_key(identifier))
        await self.cache.delete(lock_key(identifier))

    async def remaining_attempts(self, identifier: str) -> int:
        """Attempts left on the live challenge; a fresh identifier has the full allowance."""
        if await self._is_locked(identifier):
            return 0
        record = await self._load_live(identifier)
        if record is None:
            return self.policy.max_attempts
        return max(0, self.policy.max_attempts - record.attempts)

    async def has_valid_challenge(self, identifier: str) -> bool:
        if await self._is_locked(identifier):
            return False
        record = await self._load_live(identifier)
        return record is not None and record.attempts < self.policy.max_attempts

    async def expiry_of(self, identifier: str) -> Optional[float]:
        record = await self._load_live(identifier)
        return record.expires_at if record else None

    async def sweep_expired(self, *, dry_run: bool = False) -> int:
        """Delete challenge records that are past ``expires_at`` or unreadable.

        With ``dry_run`` the records are only counted.
        """
        removed = 0
        now = self._clock()
        for key in await self.cache.keys_matching(f"{escape_glob(OTP_KEY_PREFIX)}*"):
            raw = await self.cache.get(key)
            if raw is None:
                continue
            try:
                stale = now > ChallengeRecord.from_json(raw).expires_at
            except ValueError:
                stale = True
            if stale:
                removed += 1 if dry_run else await self.cache.delete(key)
        if removed and not dry_run:
            logger.info("otp_sweep_completed", removed=removed)
        return removed


__all__ = [
    "ChallengeFailure",
    "ChallengeIssue",
    "ChallengeVerification",
    "OtpChallengeService",
    "challenge_key",
    "lock_key",
]
