"""Unit tests for the token service.

Tests for:
- Issuing and verifying tokens
- Expiry classification at the TTL boundary
- Tampering, foreign secrets, algorithm confusion and audience checks
"""

import base64
import hashlib
import hmac
import json
from datetime import timedelta

import pytest

from csaccess.config import Settings
from csaccess.service.tokens import IdentityClaims, TokenService, TokenStatus

SECRET = "Token-Service-Test-Secret-0123456789"
START = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _decode_payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


@pytest.fixture
def claims():
    return IdentityClaims(user_id="user-1", email="ann@example.com", role="user")


class TestIssue:
    def test_token_is_compact_three_segment_string(self, tokens, claims):
        token = tokens.issue(claims, timedelta(days=7))
        assert token.count(".") == 2
        assert " " not in token

    def test_payload_embeds_identity_and_expiry(self, tokens, claims, settings):
        token = tokens.issue(claims, timedelta(days=7))
        payload = _decode_payload(token)
        assert payload["sub"] == "user-1"
        assert payload["email"] == "ann@example.com"
        assert payload["role"] == "user"
        assert payload["iat"] == START
        assert payload["exp"] == START + 7 * 24 * 3600
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience

    def test_issue_is_deterministic_for_same_inputs(self, tokens, claims):
        assert tokens.issue(claims, 60) == tokens.issue(claims, 60)

    def test_issue_with_claims_reports_embedded_times(self, tokens, claims):
        token, embedded = tokens.issue_with_claims(claims, 120)
        assert embedded.issued_at == START
        assert embedded.expires_at == START + 120
        assert tokens.verify(token).claims == embedded

    def test_fractional_clock_is_floored(self, settings, claims):
        service = TokenService(settings, clock=FakeClock(START + 0.9))
        assert _decode_payload(service.issue(claims, 10))["iat"] == START


class TestVerify:
    def test_fresh_token_is_valid_with_matching_claims(self, tokens, claims):
        result = tokens.verify(tokens.issue(claims, 3600))
        assert result.status is TokenStatus.VALID
        assert result.valid
        assert result.claims.user_id == claims.user_id
        assert result.claims.email == claims.email
        assert result.claims.role == claims.role

    def test_just_before_expiry_is_valid(self, tokens, claims, clock):
        token = tokens.issue(claims, 3600)
        clock.now = START + 3600 - 1
        assert tokens.verify(token).status is TokenStatus.VALID

    def test_at_expiry_is_expired(self, tokens, claims, clock):
        token = tokens.issue(claims, 3600)
        clock.now = START + 3600
        assert tokens.verify(token).status is TokenStatus.EXPIRED

    def test_after_expiry_is_expired_and_keeps_claims(self, tokens, claims, clock):
        token = tokens.issue(claims, 3600)
        clock.now = START + 3600 + 5
        result = tokens.verify(token)
        assert result.status is TokenStatus.EXPIRED
        assert result.claims.user_id == "user-1"

    def test_clock_skew_leeway_extends_validity(self, claims):
        clock = FakeClock()
        service = TokenService(
            Settings(jwt_secret=SECRET, token_clock_skew_seconds=30), clock=clock
        )
        token = service.issue(claims, 60)
        clock.now = START + 60 + 10
        assert service.verify(token).status is TokenStatus.VALID
        clock.now = START + 60 + 30
        assert service.verify(token).status is TokenStatus.EXPIRED

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c", "....", "é.é.é"])
    def test_structural_garbage_is_invalid(self, tokens, garbage):
        assert tokens.verify(garbage).status is TokenStatus.INVALID

    def test_none_is_invalid(self, tokens):
        assert tokens.verify(None).status is TokenStatus.INVALID

    def test_tampered_signature_is_invalid(self, tokens, claims):
        token = tokens.issue(claims, 3600)
        head, payload, sig = token.split(".")
        flipped = ("A" if sig[0] != "A" else "B") + sig[1:]
        assert tokens.verify(f"{head}.{payload}.{flipped}").status is TokenStatus.INVALID

    def test_tampered_payload_is_invalid(self, tokens, claims):
        token = tokens.issue(claims, 3600)
        head, _, sig = token.split(".")
        forged = _b64({**_decode_payload(token), "role": "admin"})
        assert tokens.verify(f"{head}.{forged}.{sig}").status is TokenStatus.INVALID

    def test_token_from_other_secret_is_invalid(self, tokens, claims, clock):
        other = TokenService(Settings(jwt_secret="another-secret-entirely"), clock=clock)
        assert tokens.verify(other.issue(claims, 3600)).status is TokenStatus.INVALID

    def test_expired_token_from_other_secret_is_invalid(self, tokens, claims, clock):
        other = TokenService(Settings(jwt_secret="another-secret-entirely"), clock=clock)
        token = other.issue(claims, 10)
        clock.now = START + 100
        assert tokens.verify(token).status is TokenStatus.INVALID

    def test_alg_none_is_invalid(self, tokens, claims):
        token = tokens.issue(claims, 3600)
        _, payload, _ = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        assert tokens.verify(f"{header}.{payload}.").status is TokenStatus.INVALID

    def test_non_hs256_header_with_valid_mac_is_invalid(self, tokens, claims):
        token = tokens.issue(claims, 3600)
        _, payload, _ = token.split(".")
        header = _b64({"alg": "HS512", "typ": "JWT"})
        signing_input = f"{header}.{payload}"
        sig = base64.urlsafe_b64encode(
            hmac.new(SECRET.encode(), signing_input.encode(), hashlib.sha256).digest()
        ).decode().rstrip("=")
        assert tokens.verify(f"{signing_input}.{sig}").status is TokenStatus.INVALID

    def test_wrong_audience_is_invalid(self, claims, clock):
        issuer = TokenService(
            Settings(jwt_secret=SECRET, jwt_audience="someone-else"), clock=clock
        )
        verifier = TokenService(Settings(jwt_secret=SECRET), clock=clock)
        assert verifier.verify(issuer.issue(claims, 3600)).status is TokenStatus.INVALID

    def test_wrong_issuer_is_invalid(self, claims, clock):
        issuer = TokenService(Settings(jwt_secret=SECRET, jwt_issuer="elsewhere"), clock=clock)
        verifier = TokenService(Settings(jwt_secret=SECRET), clock=clock)
        assert verifier.verify(issuer.issue(claims, 3600)).status is TokenStatus.INVALID

    def test_missing_claim_is_invalid(self, tokens, claims, settings):
        payload = {
            "sub": "user-1",
            "role": "user",
            "iat": START,
            "exp": START + 60,
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
        }
        token = tokens._encode_jwt(payload)
        assert tokens.verify(token).status is TokenStatus.INVALID


class TestHashToken:
    def test_hash_is_sha256_hex_and_not_the_token(self, tokens, claims):
        token = tokens.issue(claims, 60)
        digest = tokens.hash_token(token)
        assert digest == hashlib.sha256(token.encode()).hexdigest()
        assert token not in digest
        assert len(digest) == 64
