"""Tests for access tokens and signing key configuration."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from stockledger.auth import (
    ALGORITHM,
    SECRET_KEY,
    TOKEN_TYPE,
    SecretKeyError,
    TokenData,
    create_access_token,
    decode_access_token,
    resolve_secret_key,
)
from stockledger.config import DEFAULT_SECRET_KEY, Settings


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestResolveSecretKey:
    """Tests for resolve_secret_key."""

    def test_custom_key_used(self) -> None:
        assert resolve_secret_key(_settings(jwt_secret_key="my-custom-key", debug=False)) == "my-custom-key"

    def test_custom_key_allowed_in_production(self) -> None:
        config = _settings(jwt_secret_key="prod-key", environment="production")
        assert resolve_secret_key(config) == "prod-key"

    def test_default_key_allowed_in_debug(self) -> None:
        config = _settings(jwt_secret_key=DEFAULT_SECRET_KEY, debug=True, environment="development")
        assert resolve_secret_key(config) == DEFAULT_SECRET_KEY

    def test_default_key_rejected_in_production(self) -> None:
        config = _settings(jwt_secret_key=DEFAULT_SECRET_KEY, debug=True, environment="prod")
        with pytest.raises(SecretKeyError, match="JWT_SECRET_KEY must be set"):
            resolve_secret_key(config)

    def test_default_key_rejected_without_debug(self) -> None:
        config = _settings(jwt_secret_key=DEFAULT_SECRET_KEY, debug=False, environment="development")
        with pytest.raises(SecretKeyError):
            resolve_secret_key(config)

    def test_jwt_secret_key_takes_precedence(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("JWT_SECRET_KEY", "jwt-specific-key")
        monkeypatch.setenv("SECRET_KEY", "generic-key")
        assert _settings().jwt_secret_key == "jwt-specific-key"

    def test_secret_key_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("JWT_SECRET_KEY", raising=False)
        monkeypatch.setenv("SECRET_KEY", "generic-key")
        assert _settings().jwt_secret_key == "generic-key"


class TestAccessTokens:
    """Tests for create_access_token and decode_access_token."""

    def test_round_trip_identity(self) -> None:
        token = create_access_token(user_id=42, email="clerk@example.com", name="Store Clerk")
        result = decode_access_token(token)

        assert result == TokenData(user_id=42, email="clerk@example.com", name="Store Clerk")
        assert result.recorder == "Store Clerk"

    def test_recorder_falls_back_to_email(self) -> None:
        result = decode_access_token(create_access_token(user_id=7, email="clerk@example.com"))

        assert result.name is None
        assert result.recorder == "clerk@example.com"

    def test_rejects_expired_token(self) -> None:
        token = create_access_token(user_id=42, email="clerk@example.com", expires_delta=timedelta(minutes=-1))
        assert decode_access_token(token) is None

    @pytest.mark.parametrize(
        "claims",
        [
            {"sub": "42", "type": "refresh"},
            {"sub": "not-a-number", "type": TOKEN_TYPE},
            {"sub": "0", "type": TOKEN_TYPE},
        ],
    )
    def test_rejects_bad_claims(self, claims: dict) -> None:
        claims = {**claims, "email": "clerk@example.com", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)}
        token = jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)
        assert decode_access_token(token) is None

    def test_rejects_token_signed_with_other_key(self) -> None:
        token = jwt.encode(
            {"sub": "1", "type": TOKEN_TYPE, "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            "some-other-key",
            algorithm=ALGORITHM,
        )
        assert decode_access_token(token) is None

    def test_rejects_garbage(self) -> None:
        assert decode_access_token("not-a-valid-token") is None
