from __future__ import annotations

import time

import jwt
import pytest

from lms_identity.domain.account import Role
from lms_identity.security.passwords import PasswordHasher
from lms_identity.security.tokens import TokenService, TokenStatus

SECRET = "unit-secret"
ISSUER = "lms.identity.unit"


@pytest.fixture
def token_service() -> TokenService:
    return TokenService(SECRET, ISSUER, ttl_seconds=60)


def test_issue_and_verify_round_trip(token_service):
    token, ttl = token_service.issue(account_id="acct-1", role=Role.ADMIN)

    result = token_service.verify(token)

    assert ttl == 60
    assert result.status is TokenStatus.VALID
    assert result.claims.account_id == "acct-1"
    assert result.claims.role is Role.ADMIN


def test_expired_token_is_reported_as_expired(token_service):
    token, _ = token_service.issue(account_id="acct-1", role=Role.LEARNER, now=int(time.time()) - 120)

    result = token_service.verify(token)

    assert result.status is TokenStatus.EXPIRED
    assert result.claims is None


@pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
def test_malformed_tokens_are_invalid(token_service, token):
    assert token_service.verify(token).status is TokenStatus.INVALID


def test_token_signed_with_other_secret_is_invalid(token_service):
    forged, _ = TokenService("other-secret", ISSUER, 60).issue(account_id="acct-1", role=Role.ADMIN)

    assert token_service.verify(forged).status is TokenStatus.INVALID


def test_token_from_other_issuer_is_invalid(token_service):
    foreign, _ = TokenService(SECRET, "someone-else", 60).issue(account_id="acct-1", role=Role.ADMIN)

    assert token_service.verify(foreign).status is TokenStatus.INVALID


def test_unknown_role_claim_is_invalid(token_service):
    now = int(time.time())
    token = jwt.encode(
        {"iss": ISSUER, "sub": "acct-1", "role": "SUPERUSER", "iat": now, "exp": now + 60},
        SECRET,
        algorithm="HS256",
    )

    assert token_service.verify(token).status is TokenStatus.INVALID


def test_token_without_subject_is_invalid(token_service):
    now = int(time.time())
    token = jwt.encode({"iss": ISSUER, "role": "ADMIN", "exp": now + 60}, SECRET, algorithm="HS256")

    assert token_service.verify(token).status is TokenStatus.INVALID


def test_password_hasher_verifies_only_matching_password():
    hasher = PasswordHasher(rounds=4)
    hashed = hasher.hash("correct horse")

    assert hashed != "correct horse"
    assert hasher.verify("correct horse", hashed)
    assert not hasher.verify("battery staple", hashed)
    assert not hasher.verify("", hashed)
    assert not hasher.verify("correct horse", "not-a-bcrypt-hash")


def test_password_hasher_salts_each_hash():
    hasher = PasswordHasher(rounds=4)

    assert hasher.hash("same") != hasher.hash("same")


def test_password_hasher_rejects_empty_password():
    with pytest.raises(ValueError):
        PasswordHasher(rounds=4).hash("")
