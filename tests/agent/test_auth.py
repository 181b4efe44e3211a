"""
Tests for JWT authentication of the Agent API.

Tests the token checks that guard every endpoint and identify approvers.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import jwt
import pytest
from fastapi import HTTPException

from src.nexus.agent.api.auth import (
    AuthenticationError,
    JWTConfig,
    TokenPayload,
    _extract_token,
    authenticate_websocket,
    decode_token,
    validate_jwt_token,
)


@pytest.fixture
def jwt_secret():
    """Test JWT secret."""
    return "test-secret-key-for-testing-only"


@pytest.fixture
def valid_payload():
    """Valid JWT payload."""
    now = datetime.now(timezone.utc)
    return {
        "sub": "user123",
        "iss": "test-issuer",
        "aud": "test-audience",
        "exp": int((now + timedelta(hours=1)).timestamp()),
        "iat": int(now.timestamp()),
        "nbf": int(now.timestamp()),
    }


@pytest.fixture
def valid_token(jwt_secret, valid_payload):
    return jwt.encode(valid_payload, jwt_secret, algorithm="HS256")


@pytest.fixture
def expired_token(jwt_secret, valid_payload):
    payload = valid_payload.copy()
    payload["exp"] = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
    return jwt.encode(payload, jwt_secret, algorithm="HS256")


@pytest.fixture
def configured(jwt_secret):
    """JWTConfig with auth enabled and HS256 claims checks."""
    with patch.object(JWTConfig, "REQUIRE_AUTH", True), \
         patch.object(JWTConfig, "SECRET", jwt_secret), \
         patch.object(JWTConfig, "ALGORITHM", "HS256"), \
         patch.object(JWTConfig, "ISSUER", "test-issuer"), \
         patch.object(JWTConfig, "AUDIENCE", "test-audience"):
        yield


class TestExtractToken:
    """Tests for token extraction from Authorization header."""

    def test_extract_valid_bearer_token(self):
        assert _extract_token("Bearer abc123token") == "abc123token"

    def test_extract_bearer_case_insensitive(self):
        assert _extract_token("bearer abc123token") == "abc123token"

    def test_extract_wrong_auth_type(self):
        with pytest.raises(AuthenticationError) as exc_info:
            _extract_token("Basic abc123token")
        assert "Invalid authorization header format" in str(exc_info.value.detail)


class TestDecodeToken:
    """Tests for JWT validation."""

    def test_valid_token(self, configured, valid_token):
        result = decode_token(valid_token)

        assert isinstance(result, TokenPayload)
        assert result.user_id == "user123"
        assert result.iss == "test-issuer"

    def test_expired_token(self, configured, expired_token):
        with pytest.raises(AuthenticationError) as exc_info:
            decode_token(expired_token)
        assert "expired" in str(exc_info.value.detail).lower()

    def test_invalid_signature(self, configured, valid_payload):
        token = jwt.encode(valid_payload, "wrong-secret", algorithm="HS256")

        with pytest.raises(AuthenticationError) as exc_info:
            decode_token(token)
        assert "Invalid token" in str(exc_info.value.detail)

    def test_wrong_audience(self, configured, jwt_secret, valid_payload):
        payload = {**valid_payload, "aud": "someone-else"}
        token = jwt.encode(payload, jwt_secret, algorithm="HS256")

        with pytest.raises(AuthenticationError) as exc_info:
            decode_token(token)
        assert "Invalid token claims" in str(exc_info.value.detail)

    def test_missing_user_claim(self, configured, jwt_secret, valid_payload):
        payload = valid_payload.copy()
        del payload["sub"]
        token = jwt.encode(payload, jwt_secret, algorithm="HS256")

        with pytest.raises(AuthenticationError) as exc_info:
            decode_token(token)
        assert "sub" in str(exc_info.value.detail)

    def test_custom_user_claim(self, configured, jwt_secret, valid_payload):
        payload = {**valid_payload, "email": "ops@example.com"}
        token = jwt.encode(payload, jwt_secret, algorithm="HS256")

        with patch.object(JWTConfig, "USER_ID_CLAIM", "email"):
            result = decode_token(token)

        assert result.user_id == "ops@example.com"

    def test_malformed_token(self, configured):
        with pytest.raises(AuthenticationError):
            decode_token("not.a.valid.jwt")


class TestAlgorithmAllowlist:
    def test_none_rejected(self):
        with patch.object(JWTConfig, "ALGORITHM", "none"):
            with pytest.raises(ValueError, match="not allowed"):
                JWTConfig.validate_algorithm()

    def test_unknown_rejected(self):
        with patch.object(JWTConfig, "ALGORITHM", "HS1"):
            with pytest.raises(ValueError):
                JWTConfig.validate_algorithm()

    def test_asymmetric_requires_public_key(self):
        with patch.object(JWTConfig, "ALGORITHM", "RS256"), \
             patch.object(JWTConfig, "PUBLIC_KEY", None), \
             patch.object(JWTConfig, "_public_key_cache", None):
            with pytest.raises(ValueError, match="JWT_PUBLIC_KEY"):
                JWTConfig.get_verification_key()


class TestValidateDependency:
    """Tests for the FastAPI dependency and dev-mode bypass."""

    @pytest.mark.asyncio
    async def test_dev_mode_bypasses_auth(self):
        with patch.object(JWTConfig, "REQUIRE_AUTH", False):
            result = await validate_jwt_token("Bearer invalid")

        assert result.user_id == "dev-user"

    @pytest.mark.asyncio
    async def test_header_required(self, configured):
        with pytest.raises(AuthenticationError) as exc_info:
            await validate_jwt_token(None)
        assert "Authorization header required" in str(exc_info.value.detail)

    @pytest.mark.asyncio
    async def test_valid_header(self, configured, valid_token):
        result = await validate_jwt_token(f"Bearer {valid_token}")

        assert result.user_id == "user123"

    @pytest.mark.asyncio
    async def test_missing_secret_is_server_error(self):
        with patch.object(JWTConfig, "REQUIRE_AUTH", True), \
             patch.object(JWTConfig, "ALGORITHM", "HS256"), \
             patch.object(JWTConfig, "SECRET", None):
            with pytest.raises(HTTPException) as exc_info:
                await validate_jwt_token("Bearer anything")

        assert exc_info.value.status_code == 500


class TestWebSocketAuth:
    def test_token_required(self, configured):
        with pytest.raises(AuthenticationError):
            authenticate_websocket(None)

    def test_valid_token(self, configured, valid_token):
        assert authenticate_websocket(valid_token).user_id == "user123"
