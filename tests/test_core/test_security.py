"""Tests for password hashing and access tokens."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from flowdash.config import settings
from flowdash.core.security import (
    InvalidTokenError,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)


class TestPasswords:
    def test_hash_is_not_plaintext(self):
        hashed = hash_password("correct horse")

        assert hashed != "correct horse"
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)


class TestAccessTokens:
    def test_claims_round_trip(self):
        token = create_access_token("user-1")

        claims = decode_access_token(token)

        assert claims.sub == "user-1"
        assert claims.exp > datetime.now(timezone.utc)

    def test_expired_token_is_rejected(self):
        token = create_access_token("user-1", now=datetime.now(timezone.utc) - timedelta(hours=2))

        with pytest.raises(InvalidTokenError):
            decode_access_token(token)

    def test_foreign_signature_is_rejected(self):
        token = jwt.encode({"sub": "user-1"}, "another-secret", algorithm=settings.jwt_algorithm)

        with pytest.raises(InvalidTokenError):
            decode_access_token(token)

    def test_token_without_subject_is_rejected(self):
        exp = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = jwt.encode(
            {"exp": exp},
            settings.jwt_secret_key.get_secret_value(),
            algorithm=settings.jwt_algorithm,
        )

        with pytest.raises(InvalidTokenError):
            decode_access_token(token)
