from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from hyreauth.service.errors import ApprovalTransitionError, ValidationError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of principal roles."""

    ADMIN = "admin"
    STAFF = "staff"
    FLEET_OWNER = "fleetOwner"
    CHAUFFEUR = "chauffeur"
    CUSTOMER = "customer"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid role: {value}", detail={"allowed": [r.value for r in cls]}
            ) from None

    @property
    def requires_approval(self) -> bool:
        return self in _ROLES_REQUIRING_APPROVAL


_ROLES_REQUIRING_APPROVAL = frozenset({Role.FLEET_OWNER, Role.CHAUFFEUR})


class ApprovalStatus(str, Enum):
    """Approval workflow state of a principal."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ON_HOLD = "ON_HOLD"
    ARCHIVED = "ARCHIVED"

    @property
    def is_final(self) -> bool:
        return self in {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.ARCHIVED}

    @property
    def requires_action(self) -> bool:
        return self in {ApprovalStatus.PENDING, ApprovalStatus.PROCESSING}

    def can_transition_to(self, target: "ApprovalStatus") -> bool:
        return self in _LEGAL_SOURCES[target]


# For every target state, the states it may be entered from.
_LEGAL_SOURCES: Dict[ApprovalStatus, frozenset] = {
    ApprovalStatus.PENDING: frozenset(),
    ApprovalStatus.PROCESSING: frozenset({ApprovalStatus.PENDING}),
    ApprovalStatus.APPROVED: frozenset({ApprovalStatus.PENDING, ApprovalStatus.PROCESSING}),
    ApprovalStatus.REJECTED: frozenset(
        {ApprovalStatus.PENDING, ApprovalStatus.PROCESSING, ApprovalStatus.ON_HOLD}
    ),
    ApprovalStatus.ON_HOLD: frozenset({ApprovalStatus.PENDING, ApprovalStatus.PROCESSING}),
    ApprovalStatus.ARCHIVED: frozenset(
        {s for s in ApprovalStatus if s is not ApprovalStatus.ARCHIVED}
    ),
}


class DeliveryChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    roles: Tuple[Role, ...]
    approval_status: ApprovalStatus
    phone_number: str = ""
    name: Optional[str] = None
    approval_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def register(
        cls, identifier: str, role: Role, *, phone_number: str = "", name: Optional[str] = None
    ) -> "Principal":
        """Build a self-registered principal; approval-gated roles start pending."""
        status = ApprovalStatus.PENDING if role.requires_approval else ApprovalStatus.APPROVED
        return cls(
            id=str(uuid.uuid4()),
            email=identifier.strip().lower(),
            roles=(role,),
            approval_status=status,
            phone_number=phone_number,
            name=name,
        )

    @property
    def is_approved(self) -> bool:
        return self.approval_status is ApprovalStatus.APPROVED

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    def transition(
        self, target: ApprovalStatus, *, reason: Optional[str] = None
    ) -> "Principal":
        """Return a copy in ``target`` state; the aggregate itself is never mutated."""
        if not self.approval_status.can_transition_to(target):
            raise ApprovalTransitionError(
                f"Cannot move principal with status {self.approval_status.value} "
                f"to {target.value}",
                detail={"from": self.approval_status.value, "to": target.value},
            )
        return replace(self, approval_status=target, approval_reason=reason)


@dataclass(frozen=True)
class PrincipalSummary:
    id: str
    email: str
    phone_number: str
    name: Optional[str]
    roles: Tuple[str, ...]
    approval_status: str

    @classmethod
    def of(cls, principal: Principal) -> "PrincipalSummary":
        return cls(
            id=principal.id,
            email=principal.email,
            phone_number=principal.phone_number,
            name=principal.name,
            roles=tuple(role.value for role in principal.roles),
            approval_status=principal.approval_status.value,
        )


@dataclass
class ChallengeRecord:
    code: str
    expires_at: float
    attempts: int = 0
    delivery_channel: DeliveryChannel = DeliveryChannel.EMAIL

    def to_json(self) -> str:
        payload = asdict(self)
        payload["delivery_channel"] = self.delivery_channel.value
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "ChallengeRecord":
        """Parse a stored record; raises ``ValueError`` for anything malformed."""
        try:
            data = json.loads(raw)
            return cls(
                code=str(data["code"]),
                expires_at=float(data["expires_at"]),
                attempts=int(data.get("attempts", 0)),
                delivery_channel=DeliveryChannel(data.get("delivery_channel", "email")),
            )
        except (TypeError, KeyError, json.JSONDecodeError) as exc:
            raise ValueError(f"malformed challenge record: {exc}") from exc


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    expires_at: int
    refresh_token: Optional[str] = None
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        payload = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at,
        }
        if self.refresh_token:
            payload["refresh_token"] = self.refresh_token
        return payload
