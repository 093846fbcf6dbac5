from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from hyreauth.config import TokenConfig
from hyreauth.logging import get_logger, token_fingerprint
from hyreauth.service.errors import (
    AuthenticationError,
    TokenExpiredError,
    TokenInvalidError,
    TokenTypeMismatchError,
)
from hyreauth.storage.models import Principal, TokenPair

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"
PASSWORD_RESET_TOKEN = "password-reset"
EMAIL_VERIFICATION_TOKEN = "email-verification"
TOKEN_TYPES = (ACCESS_TOKEN, REFRESH_TOKEN, PASSWORD_RESET_TOKEN, EMAIL_VERIFICATION_TOKEN)
_PURPOSE_TYPES = (PASSWORD_RESET_TOKEN, EMAIL_VERIFICATION_TOKEN)
DEFAULT_DURATION_SECONDS = 15 * 60

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_duration(value: Any) -> int:
    """Seconds for ``900``, ``"900"``, ``"15m"``, ``"1h"`` or ``"7d"``.

    Anything unparseable or non-positive falls back to 15 minutes.
    """
    if isinstance(value, bool):
        return DEFAULT_DURATION_SECONDS
    if isinstance(value, (int, float)):
        seconds = int(value)
        return seconds if seconds > 0 else DEFAULT_DURATION_SECONDS
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            if seconds > 0:
                return seconds
    return DEFAULT_DURATION_SECONDS


def extract_bearer(header: Optional[str]) -> str:
    if not header or not header.startswith("Bearer "):
        raise TokenInvalidError("Invalid bearer token format")
    token = header[len("Bearer "):].strip()
    if not token:
        raise TokenInvalidError("Invalid bearer token format")
    return token


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


@dataclass(frozen=True)
class AccessTokenValidation:
    valid: bool
    claims: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    is_expired: bool = False


@dataclass(frozen=True)
class RefreshTokenValidation:
    valid: bool
    principal_id: Optional[str] = None
    error: Optional[str] = None
    is_expired: bool = False


@dataclass(frozen=True)
class PurposeTokenValidation:
    valid: bool
    principal_id: Optional[str] = None
    email: Optional[str] = None
    error: Optional[str] = None
    is_expired: bool = False


class TokenService:
    """HS256 token issuance and verification.

    Access and refresh tokens are signed with different secrets. Every token
    carries a ``token_type`` claim that each verifier checks; password-reset
    and email-verification tokens share the access secret and also carry a
    matching ``purpose`` claim.
    """

    def __init__(self, config: TokenConfig, *, clock: Callable[[], float] = time.time) -> None:
        if not config.access_secret or not config.refresh_secret:
            raise ValueError("token signing secrets must be configured")
        if config.access_secret == config.refresh_secret:
            raise ValueError("access and refresh tokens require distinct secrets")
        self.config = config
        self._clock = clock
        self.access_ttl_seconds = parse_duration(config.access_ttl)
        self.refresh_ttl_seconds = parse_duration(config.refresh_ttl)
        self.password_reset_ttl_seconds = parse_duration(config.password_reset_ttl)
        self.email_verification_ttl_seconds = parse_duration(config.email_verification_ttl)

    def _secret_for(self, token_type: str) -> bytes:
        secret = self.config.refresh_secret if token_type == REFRESH_TOKEN else self.config.access_secret
        return secret.encode()

    def _sign(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _verify(self, token: str, expected_type: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError("Malformed token") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("Malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("Unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(
                self._secret_for(expected_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            claimed = (self.decode_unverified(token) or {}).get("token_type")
            if claimed in TOKEN_TYPES and claimed != expected_type:
                raise TokenTypeMismatchError(
                    f"Token type mismatch: expected {expected_type} token",
                    detail={"token_type": claimed},
                )
            raise TokenInvalidError("Invalid token signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("Malformed token payload") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("Malformed token payload")

        if payload.get("token_type") != expected_type:
            raise TokenTypeMismatchError(
                f"Token type mismatch: expected {expected_type} token",
                detail={"token_type": payload.get("token_type")},
            )
        if expected_type in _PURPOSE_TYPES and payload.get("purpose") != expected_type:
            raise TokenTypeMismatchError(
                "Invalid token purpose", detail={"purpose": payload.get("purpose")}
            )
        if payload.get("iss") != self.config.issuer:
            raise TokenInvalidError("Invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = aud == self.config.audience
        if not valid_aud:
            raise TokenInvalidError("Invalid token audience")
        exp = payload.get("exp")
        if exp is None or isinstance(exp, bool):
            raise TokenInvalidError("Token has no expiry")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise TokenInvalidError("Invalid token expiry") from None
        if self._clock() >= exp_ts + self.config.leeway_seconds:
            raise TokenExpiredError("Token has expired", detail={"exp": exp_ts})
        if not payload.get("sub"):
            raise TokenInvalidError("Token has no subject")
        return payload

    def issue(
        self,
        principal: Principal,
        *,
        include_refresh: bool = False,
        expires_in: str | int | None = None,
    ) -> TokenPair:
        now = int(self._clock())
        access_ttl = (
            parse_duration(expires_in) if expires_in is not None else self.access_ttl_seconds
        )
        access_exp = now + access_ttl
        access_payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": principal.id,
            "email": principal.email,
            "phone_number": principal.phone_number,
            "roles": [role.value for role in principal.roles],
            "approval_status": principal.approval_status.value,
            "token_type": ACCESS_TOKEN,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": access_exp,
        }
        refresh_token = None
        if include_refresh:
            refresh_payload = {
                "iss": self.config.issuer,
                "aud": self.config.audience,
                "sub": principal.id,
                "token_type": REFRESH_TOKEN,
                "jti": str(uuid.uuid4()),
                "iat": now,
                "exp": now + self.refresh_ttl_seconds,
            }
            refresh_token = self._sign(refresh_payload, REFRESH_TOKEN)
        return TokenPair(
            access_token=self._sign(access_payload, ACCESS_TOKEN),
            expires_at=access_exp,
            refresh_token=refresh_token,
        )

    def verify_access(self, token: str) -> dict[str, Any]:
        """Verified access claims, or the matching ``AuthenticationError`` subclass."""
        return self._verify(token, ACCESS_TOKEN)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        return self._verify(token, REFRESH_TOKEN)

    def validate_access(self, token: str) -> AccessTokenValidation:
        try:
            claims = self._verify(token, ACCESS_TOKEN)
        except TokenExpiredError as exc:
            return AccessTokenValidation(valid=False, error=exc.message, is_expired=True)
        except AuthenticationError as exc:
            logger.info(
                "access_token_rejected",
                reason=exc.error_code,
                fingerprint=token_fingerprint(str(token)),
            )
            return AccessTokenValidation(valid=False, error=exc.message)
        return AccessTokenValidation(valid=True, claims=claims)

    def validate_refresh(self, token: str) -> RefreshTokenValidation:
        try:
            claims = self._verify(token, REFRESH_TOKEN)
        except TokenExpiredError as exc:
            return RefreshTokenValidation(valid=False, error=exc.message, is_expired=True)
        except AuthenticationError as exc:
            logger.info(
                "refresh_token_rejected",
                reason=exc.error_code,
                fingerprint=token_fingerprint(str(token)),
            )
            return RefreshTokenValidation(valid=False, error=exc.message)
        return RefreshTokenValidation(valid=True, principal_id=str(claims["sub"]))

    def refresh(self, refresh_token: str, principal: Principal) -> TokenPair:
        """Exchange a refresh token for a new access token; the refresh token is not rotated."""
        claims = self._verify(refresh_token, REFRESH_TOKEN)
        if claims["sub"] != principal.id:
            logger.warning(
                "refresh_token_subject_mismatch",
                principal_id=principal.id,
                fingerprint=token_fingerprint(refresh_token),
            )
            raise TokenInvalidError("Refresh token does not match principal")
        return self.issue(principal, include_refresh=False)

    def _issue_purpose_token(
        self, principal_id: str, token_type: str, ttl_seconds: int, **claims: Any
    ) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": principal_id,
            **claims,
            "token_type": token_type,
            "purpose": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
        }
        return self._sign(payload, token_type)

    def _validate_purpose_token(self, token: str, token_type: str) -> PurposeTokenValidation:
        try:
            claims = self._verify(token, token_type)
        except TokenExpiredError as exc:
            return PurposeTokenValidation(valid=False, error=exc.message, is_expired=True)
        except AuthenticationError as exc:
            logger.info(
                "purpose_token_rejected",
                purpose=token_type,
                reason=exc.error_code,
                fingerprint=token_fingerprint(str(token)),
            )
            return PurposeTokenValidation(valid=False, error=exc.message)
        return PurposeTokenValidation(
            valid=True, principal_id=str(claims["sub"]), email=claims.get("email")
        )

    def issue_password_reset_token(self, principal_id: str) -> str:
        return self._issue_purpose_token(
            principal_id, PASSWORD_RESET_TOKEN, self.password_reset_ttl_seconds
        )

    def validate_password_reset_token(self, token: str) -> PurposeTokenValidation:
        return self._validate_purpose_token(token, PASSWORD_RESET_TOKEN)

    def issue_email_verification_token(self, principal_id: str, email: str) -> str:
        """Token proving control of ``email``; the address travels in the claims."""
        return self._issue_purpose_token(
            principal_id,
            EMAIL_VERIFICATION_TOKEN,
            self.email_verification_ttl_seconds,
            email=email,
        )

    def validate_email_verification_token(self, token: str) -> PurposeTokenValidation:
        return self._validate_purpose_token(token, EMAIL_VERIFICATION_TOKEN)

    @staticmethod
    def decode_unverified(token: str) -> Optional[dict[str, Any]]:
        """Claims without signature or expiry checks; ``None`` when undecodable."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (AttributeError, ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def natural_expiry(self, token: str) -> Optional[float]:
        claims = self.decode_unverified(token) or {}
        exp = claims.get("exp")
        if isinstance(exp, (int, float)) and not isinstance(exp, bool):
            return float(exp)
        return None

    def is_expired(self, token: str) -> bool:
        exp = self.natural_expiry(token)
        return exp is None or self._clock() >= exp


__all__ = [
    "ACCESS_TOKEN",
    "EMAIL_VERIFICATION_TOKEN",
    "PASSWORD_RESET_TOKEN",
    "REFRESH_TOKEN",
    "AccessTokenValidation",
    "PurposeTokenValidation",
    "RefreshTokenValidation",
    "TokenService",
    "extract_bearer",
    "parse_duration",
]
