from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChallengeIssued:
    identifier: str
    expires_at: float
    purpose: str
    delivered: bool
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ChallengeVerified:
    identifier: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class PrincipalRegistered:
    principal_id: str
    identifier: str
    role: str
    approval_status: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class PrincipalAuthenticated:
    principal_id: str
    role: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TokenRevoked:
    principal_id: str
    token_type: str
    fingerprint: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class PrincipalLoggedOut:
    principal_id: str
    keys_cleared: int
    revoked_tokens: int
    reason: Optional[str] = None
    occurred_at: datetime = field(default_factory=_utcnow)


AuthEvent = Union[
    ChallengeIssued,
    ChallengeVerified,
    PrincipalRegistered,
    PrincipalAuthenticated,
    TokenRevoked,
    PrincipalLoggedOut,
]

__all__ = [
    "AuthEvent",
    "ChallengeIssued",
    "ChallengeVerified",
    "PrincipalAuthenticated",
    "PrincipalLoggedOut",
    "PrincipalRegistered",
    "TokenRevoked",
]
