"""Tests for auth/tokens.py -- bearer JWTs and the cron job token."""

from jose import jwt

from auth.tokens import create_access_token, decode_access_token, job_token_valid
from core.config import get_settings


class TestAccessTokens:
    def test_round_trip(self):
        payload = decode_access_token(create_access_token(42, expire_seconds=60))
        assert payload["user_id"] == 42
        assert payload["sub"] == "42"

    def test_expired_token_rejected(self):
        token = jwt.encode({"user_id": 1, "exp": 0}, get_settings().secret_key, algorithm="HS256")
        assert decode_access_token(token) is None

    def test_wrong_key_rejected(self):
        token = jwt.encode({"user_id": 1}, "x" * 40, algorithm="HS256")
        assert decode_access_token(token) is None

    def test_non_integer_user_id_rejected(self):
        token = jwt.encode({"user_id": "1"}, get_settings().secret_key, algorithm="HS256")
        assert decode_access_token(token) is None

    def test_garbage_rejected(self):
        assert decode_access_token("not.a.jwt") is None


class TestJobToken:
    def test_matches_configured_token(self):
        assert job_token_valid("test-job-token") is True

    def test_mismatch_and_missing(self):
        assert job_token_valid("test-job-tokeN") is False
        assert job_token_valid("") is False
        assert job_token_valid(None) is False
