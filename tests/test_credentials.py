"""Tests for password hashing and bearer token signing."""

import base64
import json
import time

import pytest

from jobinow.config import Settings
from jobinow.service.credentials import PASSWORD_ALGO, CredentialVerifier, TokenIssuer


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
    )


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def verifier():
    return CredentialVerifier()


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _split(token: str):
    header, payload, sig = token.split(".")
    padding = "=" * ((4 - len(payload) % 4) % 4)
    return header, json.loads(base64.urlsafe_b64decode(payload + padding)), sig


class TestCredentialVerifier:
    """Tests for argon2id hashing."""

    def test_hash_is_salted_and_not_plaintext(self, verifier):
        hash1, algo = verifier.hash("TestPassword123!")
        hash2, _ = verifier.hash("TestPassword123!")

        assert algo == PASSWORD_ALGO == "argon2id"
        assert hash1 != "TestPassword123!"
        assert hash1.startswith("$argon2id$")
        assert hash1 != hash2

    def test_verify_accepts_correct_secret(self, verifier):
        digest, algo = verifier.hash("TestPassword123!")
        assert verifier.verify("TestPassword123!", digest, algo) is True

    def test_verify_rejects_wrong_secret(self, verifier):
        digest, algo = verifier.hash("TestPassword123!")
        assert verifier.verify("WrongPassword123!", digest, algo) is False

    def test_verify_rejects_missing_or_corrupt_hash(self, verifier):
        assert verifier.verify("anything", None) is False
        assert verifier.verify("anything", "") is False
        assert verifier.verify("anything", "not-an-argon2-hash") is False

    def test_verify_rejects_unknown_algorithm(self, verifier):
        digest, _ = verifier.hash("TestPassword123!")
        assert verifier.verify("TestPassword123!", digest, "bcrypt") is False


class TestTokenIssuer:
    """Tests for HS256 bearer tokens."""

    def test_issue_returns_three_part_token_with_claims(self, issuer, settings):
        value, expires_at = issuer.issue("user-1", "a@example.com", "MANAGER")

        header, payload, _ = _split(value)
        assert payload["sub"] == "user-1"
        assert payload["email"] == "a@example.com"
        assert payload["role"] == "MANAGER"
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["token_type"] == "access"
        assert payload["exp"] == int(expires_at.timestamp())
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_two_issuances_differ(self, issuer):
        first, _ = issuer.issue("user-1", "a@example.com", "MANAGER")
        second, _ = issuer.issue("user-1", "a@example.com", "MANAGER")
        assert first != second

    def test_decode_round_trip(self, issuer):
        value, _ = issuer.issue("user-1", "a@example.com", "JOB_SEEKER")
        payload = issuer.decode(value)
        assert payload is not None
        assert payload["sub"] == "user-1"

    def test_decode_rejects_tampered_payload(self, issuer):
        value, _ = issuer.issue("user-1", "a@example.com", "JOB_SEEKER")
        header, payload, sig = _split(value)
        payload["sub"] = "user-2"
        forged = f"{header}.{_b64(payload)}.{sig}"
        assert issuer.decode(forged) is None

    def test_decode_rejects_other_secret(self, issuer, settings):
        other = TokenIssuer(settings.model_copy(update={"jwt_secret": "x" * 48}))
        value, _ = other.issue("user-1", "a@example.com", "JOB_SEEKER")
        assert issuer.decode(value) is None

    def test_decode_rejects_none_algorithm(self, issuer):
        value, _ = issuer.issue("user-1", "a@example.com", "JOB_SEEKER")
        _, payload, _ = _split(value)
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
        assert issuer.decode(unsigned) is None

    def test_decode_rejects_wrong_audience(self, issuer, settings):
        other = TokenIssuer(settings.model_copy(update={"jwt_audience": "someone-else"}))
        value, _ = other.issue("user-1", "a@example.com", "JOB_SEEKER")
        assert issuer.decode(value) is None

    def test_decode_rejects_expired(self, settings):
        expired = TokenIssuer(settings.model_copy(update={"access_token_ttl_minutes": -10}))
        value, _ = expired.issue("user-1", "a@example.com", "JOB_SEEKER")
        assert expired.decode(value) is None

    def test_decode_tolerates_small_clock_skew(self, issuer):
        value, _ = issuer.issue("user-1", "a@example.com", "JOB_SEEKER")
        header, payload, _ = _split(value)
        payload["exp"] = int(time.time()) - 30
        header_payload = f"{header}.{_b64(payload)}"
        resigned = f"{header_payload}.{issuer._sign(header_payload)}"
        assert issuer.decode(resigned) is not None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "é.é.é"])
    def test_decode_rejects_garbage(self, issuer, garbage):
        assert issuer.decode(garbage) is None
