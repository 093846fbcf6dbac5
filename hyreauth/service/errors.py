from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    All errors carry a stable error code alongside the HTTP status the
    controller layer should answer with:
    - unauthorized (401)
    - forbidden (403)
    - validation_error (400)
    - service_unavailable (503)

    Authentication and authorization failures refine these with
    machine-distinguishable codes (``otp_expired``, ``token_expired`` ...)
    while keeping the status the caller sees identical.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class OtpVerificationError(AuthenticationError):
    """Verification of a one-time code failed (401)."""
    error_code = "otp_verification_failed"


class ChallengeNotFoundError(OtpVerificationError):
    error_code = "otp_not_found"


class ChallengeExpiredError(OtpVerificationError):
    error_code = "otp_expired"


class AttemptsExceededError(OtpVerificationError):
    error_code = "otp_attempts_exceeded"


class InvalidChallengeCodeError(OtpVerificationError):
    error_code = "otp_invalid"


class TokenInvalidError(AuthenticationError):
    """Token is malformed, tampered with, or signed for someone else (401)."""
    error_code = "token_invalid"


class TokenExpiredError(AuthenticationError):
    """Token signature is fine but its lifetime has elapsed (401)."""
    error_code = "token_expired"


class TokenTypeMismatchError(AuthenticationError):
    """An access token was presented where a refresh token is required, or vice versa."""
    error_code = "token_type_mismatch"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PrincipalNotApprovedError(ForbiddenError):
    """Principal exists but its approval state does not allow authentication.

    Not retryable: the caller has to wait for an approval decision.
    """
    error_code = "not_approved"


class RoleMismatchError(ForbiddenError):
    error_code = "role_mismatch"


class RestrictedRoleRegistrationError(ForbiddenError):
    error_code = "restricted_role"


class ApprovalTransitionError(ServiceError):
    """Requested approval transition is not legal from the current state (409)."""
    status_code = 409
    error_code = "conflict"


class ServiceUnavailableError(ServiceError):
    """A backing dependency is unavailable; retry policy belongs to the caller (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "OtpVerificationError",
    "ChallengeNotFoundError",
    "ChallengeExpiredError",
    "AttemptsExceededError",
    "InvalidChallengeCodeError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenTypeMismatchError",
    "TokenRevokedError",
    "ForbiddenError",
    "PrincipalNotApprovedError",
    "RoleMismatchError",
    "RestrictedRoleRegistrationError",
    "ApprovalTransitionError",
    "ServiceUnavailableError",
]
