"""Unit tests for token issuance and verification."""

import base64
import json

import pytest

from hyreauth.config import TokenConfig
from hyreauth.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenTypeMismatchError,
)
from hyreauth.service.tokens import TokenService, extract_bearer, parse_duration
from hyreauth.storage.models import Principal, Role


@pytest.fixture
def principal():
    return Principal.register("rider@example.com", Role.CUSTOMER)


def _b64(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


class TestIssue:
    def test_access_token_claims(self, token_service, principal, clock):
        pair = token_service.issue(principal)

        claims = token_service.decode_unverified(pair.access_token)
        assert claims["sub"] == principal.id
        assert claims["email"] == "rider@example.com"
        assert claims["roles"] == ["customer"]
        assert claims["approval_status"] == "APPROVED"
        assert claims["token_type"] == "access"
        assert claims["iss"] == "hyre"
        assert claims["aud"] == "hyre-clients"
        assert claims["jti"]
        assert claims["iat"] == int(clock.now)
        assert pair.expires_at == claims["exp"] == int(clock.now) + 15 * 60
        assert pair.refresh_token is None
        assert pair.token_type == "bearer"

    def test_refresh_token_is_minimal(self, token_service, principal, clock):
        pair = token_service.issue(principal, include_refresh=True)

        claims = token_service.decode_unverified(pair.refresh_token)
        assert claims["sub"] == principal.id
        assert claims["token_type"] == "refresh"
        assert claims["exp"] == int(clock.now) + 7 * 24 * 60 * 60
        assert "email" not in claims and "roles" not in claims

    def test_expires_in_override(self, token_service, principal, clock):
        pair = token_service.issue(principal, expires_in="1h")

        assert pair.expires_at == int(clock.now) + 3600

    def test_tokens_are_unique(self, token_service, principal):
        assert token_service.issue(principal).access_token != token_service.issue(principal).access_token

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValueError):
            TokenService(TokenConfig(access_secret="same-secret", refresh_secret="same-secret"))


class TestValidation:
    def test_fresh_access_token_validates(self, token_service, principal):
        pair = token_service.issue(principal)

        result = token_service.validate_access(pair.access_token)

        assert result.valid is True
        assert result.claims["sub"] == principal.id
        assert result.is_expired is False

    def test_access_token_expires(self, token_service, principal, clock):
        pair = token_service.issue(principal)
        clock.advance(15 * 60)

        result = token_service.validate_access(pair.access_token)

        assert result.valid is False
        assert result.is_expired is True
        assert token_service.is_expired(pair.access_token) is True

    def test_refresh_token_rejected_by_access_verifier(self, token_service, principal):
        pair = token_service.issue(principal, include_refresh=True)

        result = token_service.validate_access(pair.refresh_token)

        assert result.valid is False
        assert result.is_expired is False
        with pytest.raises(TokenTypeMismatchError):
            token_service.verify_access(pair.refresh_token)

    def test_access_token_rejected_by_refresh_verifier(self, token_service, principal):
        pair = token_service.issue(principal, include_refresh=True)

        result = token_service.validate_refresh(pair.access_token)

        assert result.valid is False
        assert result.principal_id is None
        with pytest.raises(TokenTypeMismatchError):
            token_service.verify_refresh(pair.access_token)

    def test_refresh_token_validates(self, token_service, principal, clock):
        pair = token_service.issue(principal, include_refresh=True)

        assert token_service.validate_refresh(pair.refresh_token).principal_id == principal.id

        clock.advance(7 * 24 * 60 * 60)
        expired = token_service.validate_refresh(pair.refresh_token)
        assert expired.valid is False
        assert expired.is_expired is True

    def test_tampered_payload_rejected(self, token_service, principal):
        header, _, signature = token_service.issue(principal).access_token.split(".")
        forged = {
            "sub": "someone-else",
            "token_type": "access",
            "iss": "hyre",
            "aud": "hyre-clients",
            "exp": 9_999_999_999,
        }

        result = token_service.validate_access(f"{header}.{_b64(forged)}.{signature}")

        assert result.valid is False
        assert result.is_expired is False

    def test_non_hs256_header_rejected(self, token_service, principal):
        _, payload, signature = token_service.issue(principal).access_token.split(".")
        none_header = _b64({"alg": "none", "typ": "JWT"})

        with pytest.raises(TokenInvalidError):
            token_service.verify_access(f"{none_header}.{payload}.{signature}")

    def test_wrong_issuer_rejected(self, settings, principal, clock):
        other = TokenService(
            TokenConfig(
                access_secret=settings.jwt_secret,
                refresh_secret=settings.jwt_refresh_secret,
                issuer="someone-else",
            ),
            clock=clock,
        )
        ours = TokenService(settings.token_config(), clock=clock)

        with pytest.raises(TokenInvalidError):
            ours.verify_access(other.issue(principal).access_token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "x.y.z", "é.é.é"])
    def test_garbage_is_invalid(self, token_service, garbage):
        result = token_service.validate_access(garbage)

        assert result.valid is False
        assert token_service.decode_unverified(garbage) is None


class TestRefresh:
    def test_refresh_with_matching_principal(self, token_service, principal, clock):
        pair = token_service.issue(principal, include_refresh=True)
        clock.advance(60)

        renewed = token_service.refresh(pair.refresh_token, principal)

        assert renewed.refresh_token is None
        assert renewed.access_token != pair.access_token
        assert renewed.expires_at == int(clock.now) + 15 * 60
        assert token_service.validate_access(renewed.access_token).valid is True

    def test_refresh_with_other_principal_fails(self, token_service, principal):
        pair = token_service.issue(principal, include_refresh=True)
        stranger = Principal.register("other@example.com", Role.CUSTOMER)

        with pytest.raises(TokenInvalidError):
            token_service.refresh(pair.refresh_token, stranger)

    def test_refresh_with_expired_token(self, token_service, principal, clock):
        pair = token_service.issue(principal, include_refresh=True)
        clock.advance(8 * 24 * 60 * 60)

        with pytest.raises(TokenExpiredError):
            token_service.refresh(pair.refresh_token, principal)

    def test_refresh_with_access_token(self, token_service, principal):
        pair = token_service.issue(principal)

        with pytest.raises(TokenTypeMismatchError):
            token_service.refresh(pair.access_token, principal)


class TestPurposeTokens:
    """Tests for password-reset and email-verification tokens."""

    def test_password_reset_round_trip(self, token_service, principal, clock):
        token = token_service.issue_password_reset_token(principal.id)

        claims = token_service.decode_unverified(token)
        assert claims["token_type"] == claims["purpose"] == "password-reset"
        assert claims["exp"] == int(clock.now) + 3600
        result = token_service.validate_password_reset_token(token)
        assert result.valid is True
        assert result.principal_id == principal.id

    def test_password_reset_expires_after_an_hour(self, token_service, principal, clock):
        token = token_service.issue_password_reset_token(principal.id)
        clock.advance(3600)

        result = token_service.validate_password_reset_token(token)

        assert result.valid is False
        assert result.is_expired is True

    def test_email_verification_round_trip(self, token_service, principal, clock):
        token = token_service.issue_email_verification_token(principal.id, "rider@example.com")

        assert token_service.decode_unverified(token)["exp"] == int(clock.now) + 24 * 3600
        result = token_service.validate_email_verification_token(token)
        assert result.valid is True
        assert result.principal_id == principal.id
        assert result.email == "rider@example.com"

    def test_purpose_tokens_are_not_interchangeable(self, token_service, principal):
        reset = token_service.issue_password_reset_token(principal.id)
        verify = token_service.issue_email_verification_token(principal.id, "rider@example.com")

        assert token_service.validate_email_verification_token(reset).valid is False
        assert token_service.validate_password_reset_token(verify).valid is False

    def test_purpose_tokens_do_not_grant_access(self, token_service, principal):
        reset = token_service.issue_password_reset_token(principal.id)

        with pytest.raises(TokenTypeMismatchError):
            token_service.verify_access(reset)
        with pytest.raises(TokenTypeMismatchError):
            token_service.verify_refresh(reset)

    def test_session_tokens_rejected_as_purpose_tokens(self, token_service, principal):
        pair = token_service.issue(principal, include_refresh=True)

        access_result = token_service.validate_password_reset_token(pair.access_token)
        refresh_result = token_service.validate_email_verification_token(pair.refresh_token)

        assert access_result.valid is False
        assert "mismatch" in access_result.error
        assert refresh_result.valid is False

    def test_missing_purpose_claim_rejected(self, token_service, principal, clock):
        forged = token_service._sign(
            {
                "iss": "hyre",
                "aud": "hyre-clients",
                "sub": principal.id,
                "token_type": "password-reset",
                "iat": int(clock.now),
                "exp": int(clock.now) + 600,
            },
            "password-reset",
        )

        result = token_service.validate_password_reset_token(forged)

        assert result.valid is False
        assert result.error == "Invalid token purpose"

    def test_lifetimes_follow_config(self, settings, principal, clock):
        config = TokenConfig(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            password_reset_ttl="30m",
            email_verification_ttl=7200,
        )
        service = TokenService(config, clock=clock)

        reset = service.decode_unverified(service.issue_password_reset_token(principal.id))
        verify = service.decode_unverified(
            service.issue_email_verification_token(principal.id, principal.email)
        )

        assert reset["exp"] == int(clock.now) + 1800
        assert verify["exp"] == int(clock.now) + 7200


@pytest.mark.parametrize(
    "value,expected",
    [
        (900, 900),
        ("45", 45),
        ("30s", 30),
        ("15m", 900),
        ("1h", 3600),
        ("7d", 604800),
        ("0m", 900),
        (-5, 900),
        ("10x", 900),
        ("soon", 900),
        (None, 900),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


class TestBearer:
    def test_extracts_token(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "bearer abc", "Bearer "])
    def test_rejects_other_schemes(self, header):
        with pytest.raises(TokenInvalidError):
            extract_bearer(header)
