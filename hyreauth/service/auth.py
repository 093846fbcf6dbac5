from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Protocol, Tuple

from hyreauth.config import Settings
from hyreauth.logging import get_logger, token_fingerprint
from hyreauth.service.errors import (
    AttemptsExceededError,
    AuthenticationError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    InvalidChallengeCodeError,
    OtpVerificationError,
    PrincipalNotApprovedError,
    RestrictedRoleRegistrationError,
    RoleMismatchError,
    TokenInvalidError,
    TokenRevokedError,
    ValidationError,
)
from hyreauth.service.events import (
    AuthEvent,
    ChallengeIssued,
    ChallengeVerified,
    PrincipalAuthenticated,
    PrincipalLoggedOut,
    PrincipalRegistered,
    TokenRevoked,
)
from hyreauth.service.notifications import ChallengeNotifier
from hyreauth.service.otp import ChallengeFailure, OtpChallengeService
from hyreauth.service.revocation import RevocationRegistry
from hyreauth.service.sessions import SessionTeardownService
from hyreauth.service.tokens import ACCESS_TOKEN, REFRESH_TOKEN, TokenService, extract_bearer
from hyreauth.storage.errors import ConstraintViolation
from hyreauth.storage.models import Principal, PrincipalSummary, Role, TokenPair

logger = get_logger(__name__)

_OTP_ERRORS = {
    ChallengeFailure.NOT_FOUND: ChallengeNotFoundError,
    ChallengeFailure.EXPIRED: ChallengeExpiredError,
    ChallengeFailure.ATTEMPTS_EXCEEDED: AttemptsExceededError,
    ChallengeFailure.INVALID_CODE: InvalidChallengeCodeError,
}


class PrincipalRepository(Protocol):
    async def find_by_id(self, principal_id: str) -> Optional[Principal]: ...

    async def find_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    async def save(self, principal: Principal) -> Principal: ...


@dataclass
class AuthContext:
    principal_id: str
    roles: Tuple[str, ...]
    approval_status: str
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChallengeRequestResult:
    identifier: str
    expires_at: float
    events: List[AuthEvent] = field(default_factory=list)


@dataclass(frozen=True)
class AuthenticationResult:
    principal: PrincipalSummary
    tokens: TokenPair
    is_new_principal: bool
    events: List[AuthEvent] = field(default_factory=list)


@dataclass(frozen=True)
class LogoutResult:
    events: List[AuthEvent] = field(default_factory=list)


@dataclass(frozen=True)
class TokenCheck:
    valid: bool
    principal_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


def normalize_identifier(identifier: str) -> str:
    normalized = (identifier or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise ValidationError("A valid email address is required", detail={"field": "email"})
    return normalized


class AuthService:
    """OTP login/registration, token lifecycle and logout.

    Operations return their domain events instead of publishing them; the
    caller decides where they go. Approval state is re-read from the
    repository on every login, refresh and access-token check because token
    claims only cache it.
    """

    def __init__(
        self,
        store: PrincipalRepository,
        otp: OtpChallengeService,
        tokens: TokenService,
        revocations: RevocationRegistry,
        teardown: SessionTeardownService,
        notifier: ChallengeNotifier,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.otp = otp
        self.tokens = tokens
        self.revocations = revocations
        self.teardown = teardown
        self.notifier = notifier
        self.settings = settings
        self._clock = clock
        self.registration_roles = frozenset(
            Role.parse(value) for value in settings.self_registration_roles
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    @staticmethod
    def _require_approved(principal: Principal, action: str) -> None:
        if principal.is_approved:
            return
        logger.warning(
            "principal_not_approved",
            principal_id=principal.id,
            approval_status=principal.approval_status.value,
            action=action,
        )
        raise PrincipalNotApprovedError(
            f"Account is not approved for {action}",
            detail={"approval_status": principal.approval_status.value},
        )

    async def request_challenge(
        self, identifier: str, role: str | Role | None = None
    ) -> ChallengeRequestResult:
        identifier = normalize_identifier(identifier)
        if role is not None:
            Role.parse(role)
        existing = await self.store.find_by_identifier(identifier)
        purpose = "login" if existing else "registration"

        issue = await self.otp.issue(identifier)

        delivered = False
        try:
            delivered = bool(
                await self.notifier.deliver_challenge(
                    identifier, issue.code, issue.expires_at, purpose=purpose
                )
            )
        except Exception as exc:
            logger.error(
                "otp_delivery_failed",
                identifier=identifier,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        if not delivered:
            logger.warning("otp_not_delivered", identifier=identifier, purpose=purpose)

        event = ChallengeIssued(
            identifier=identifier,
            expires_at=issue.expires_at,
            purpose=purpose,
            delivered=delivered,
            occurred_at=self._now(),
        )
        return ChallengeRequestResult(
            identifier=identifier, expires_at=issue.expires_at, events=[event]
        )

    async def _register(self, identifier: str, role: Role) -> Tuple[Principal, bool]:
        if role not in self.registration_roles:
            logger.warning("restricted_role_registration", identifier=identifier, role=role.value)
            raise RestrictedRoleRegistrationError(
                f"{role.value} accounts must be created by authorized users",
                detail={"role": role.value},
            )
        principal = Principal.register(identifier, role)
        try:
            return await self.store.save(principal), True
        except ConstraintViolation:
            # Lost a registration race; continue as a login for the winner
            existing = await self.store.find_by_identifier(identifier)
            if existing is None:
                raise
            return existing, False

    async def complete_challenge(
        self, identifier: str, code: str, role: str | Role
    ) -> AuthenticationResult:
        identifier = normalize_identifier(identifier)
        requested_role = Role.parse(role)

        verification = await self.otp.verify(identifier, code)
        if not verification.valid:
            logger.warning(
                "otp_verification_failed",
                identifier=identifier,
                reason=verification.reason,
            )
            error_cls = _OTP_ERRORS.get(verification.failure, OtpVerificationError)
            raise error_cls(
                verification.reason or "OTP verification failed",
                detail={"reason": verification.failure.value if verification.failure else None},
            )
        events: List[AuthEvent] = [ChallengeVerified(identifier=identifier, occurred_at=self._now())]

        principal = await self.store.find_by_identifier(identifier)
        is_new = False
        if principal is None:
            principal, is_new = await self._register(identifier, requested_role)
        if is_new:
            logger.info(
                "principal_registered",
                principal_id=principal.id,
                role=requested_role.value,
                approval_status=principal.approval_status.value,
            )
            events.append(
                PrincipalRegistered(
                    principal_id=principal.id,
                    identifier=identifier,
                    role=requested_role.value,
                    approval_status=principal.approval_status.value,
                    occurred_at=self._now(),
                )
            )
        elif not principal.has_role(requested_role):
            logger.warning(
                "role_mismatch", principal_id=principal.id, requested_role=requested_role.value
            )
            raise RoleMismatchError(
                "Requested role is not available for this account",
                detail={"requested_role": requested_role.value},
            )

        self._require_approved(principal, "login")

        tokens = self.tokens.issue(principal, include_refresh=True)
        events.append(
            PrincipalAuthenticated(
                principal_id=principal.id, role=requested_role.value, occurred_at=self._now()
            )
        )
        logger.info(
            "principal_authenticated",
            principal_id=principal.id,
            role=requested_role.value,
            is_new_principal=is_new,
        )
        return AuthenticationResult(
            principal=PrincipalSummary.of(principal),
            tokens=tokens,
            is_new_principal=is_new,
            events=events,
        )

    async def _revoke_presented(
        self, principal: Principal, token: str, token_type: str
    ) -> Optional[TokenRevoked]:
        claims = self.tokens.decode_unverified(token) or {}
        if claims.get("sub") != principal.id:
            logger.warning(
                "logout_token_not_owned",
                principal_id=principal.id,
                fingerprint=token_fingerprint(token),
            )
            return None
        natural_expiry = self.tokens.natural_expiry(token)
        if natural_expiry is None:
            return None
        if not await self.revocations.revoke(token, natural_expiry):
            return None
        return TokenRevoked(
            principal_id=principal.id,
            token_type=token_type,
            fingerprint=token_fingerprint(token),
            occurred_at=self._now(),
        )

    async def logout(
        self,
        principal_id: str,
        token: Optional[str] = None,
        *,
        refresh_token: Optional[str] = None,
    ) -> LogoutResult:
        principal = await self.store.find_by_id(principal_id)
        if principal is None:
            # Unknown ids succeed silently without teardown
            logger.info("logout_unknown_principal")
            return LogoutResult()

        events: List[AuthEvent] = []
        for value, token_type in ((token, ACCESS_TOKEN), (refresh_token, REFRESH_TOKEN)):
            if not value:
                continue
            revoked = await self._revoke_presented(principal, value, token_type)
            if revoked is not None:
                events.append(revoked)

        revoked_count = len(events)
        cleared = await self.teardown.clear_all_for(principal.id, principal.email)
        await self.otp.clear(principal.email.strip().lower())
        events.append(
            PrincipalLoggedOut(
                principal_id=principal.id,
                keys_cleared=cleared,
                revoked_tokens=revoked_count,
                occurred_at=self._now(),
            )
        )
        logger.info(
            "logout_completed",
            principal_id=principal.id,
            keys_cleared=cleared,
            revoked_tokens=revoked_count,
        )
        return LogoutResult(events=events)

    async def _resolve_access(self, token: str) -> Tuple[Principal, dict[str, Any]]:
        if not isinstance(token, str) or not token:
            raise TokenInvalidError("Malformed token")
        if await self.revocations.is_revoked(token):
            raise TokenRevokedError("Token has been revoked")
        claims = self.tokens.verify_access(token)
        principal = await self.store.find_by_id(str(claims["sub"]))
        if principal is None:
            raise AuthenticationError("Principal not found")
        self._require_approved(principal, "access")
        return principal, claims

    async def validate_access_token(self, token: str) -> TokenCheck:
        try:
            principal, _ = await self._resolve_access(token)
        except (AuthenticationError, PrincipalNotApprovedError) as exc:
            return TokenCheck(valid=False, error=exc.message, error_code=exc.error_code)
        return TokenCheck(valid=True, principal_id=principal.id)

    async def authenticate(self, authorization_header: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer`` header into a live, approved principal."""
        token = extract_bearer(authorization_header)
        principal, claims = await self._resolve_access(token)
        return AuthContext(
            principal_id=principal.id,
            roles=tuple(role.value for role in principal.roles),
            approval_status=principal.approval_status.value,
            claims=claims,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        if not isinstance(refresh_token, str) or not refresh_token:
            raise TokenInvalidError("Malformed token")
        if await self.revocations.is_revoked(refresh_token):
            raise TokenRevokedError("Token has been revoked")
        claims = self.tokens.verify_refresh(refresh_token)
        principal = await self.store.find_by_id(str(claims["sub"]))
        if principal is None:
            raise TokenInvalidError("Refresh token does not match an active principal")
        self._require_approved(principal, "refresh")
        pair = self.tokens.refresh(refresh_token, principal)
        logger.info("access_token_refreshed", principal_id=principal.id)
        return pair


__all__ = [
    "AuthContext",
    "AuthService",
    "AuthenticationResult",
    "ChallengeRequestResult",
    "LogoutResult",
    "PrincipalRepository",
    "TokenCheck",
    "normalize_identifier",
]
