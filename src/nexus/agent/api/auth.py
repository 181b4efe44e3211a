"""
JWT Authentication for the Agent API.

Every endpoint requires a bearer token; the token's subject is the
identity recorded as decided_by when an approval is resolved over HTTP.
Supports symmetric (HS*) and asymmetric (RS*, ES*, PS*) algorithms.

Environment Variables:
- JWT_SECRET: Secret key for HS* algorithms
- JWT_PUBLIC_KEY: Public key for RS*/ES*/PS* algorithms (PEM or file path)
- JWT_ALGORITHM: Algorithm to use (default: HS256)
- JWT_ISSUER: Expected issuer claim (optional)
- JWT_AUDIENCE: Expected audience claim (optional)
- JWT_USER_ID_CLAIM: Claim holding the user id (default: sub)
- REQUIRE_AUTH: Enable/disable auth (default: true)
- JWT_CLOCK_SKEW_SECONDS: Clock skew tolerance (default: 30)
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

import jwt
from fastapi import Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class JWTConfig:
    """JWT configuration from environment variables."""

    SECRET: Optional[str] = os.getenv("JWT_SECRET")
    PUBLIC_KEY: Optional[str] = os.getenv("JWT_PUBLIC_KEY")
    ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    ISSUER: Optional[str] = os.getenv("JWT_ISSUER")
    AUDIENCE: Optional[str] = os.getenv("JWT_AUDIENCE")
    REQUIRE_AUTH: bool = os.getenv("REQUIRE_AUTH", "true").lower() == "true"
    CLOCK_SKEW_SECONDS: int = int(os.getenv("JWT_CLOCK_SKEW_SECONDS", "30"))
    USER_ID_CLAIM: str = os.getenv("JWT_USER_ID_CLAIM", "sub")

    # Explicit allowlist ('none' is never accepted)
    SYMMETRIC_ALGORITHMS: frozenset[str] = frozenset({"HS256", "HS384", "HS512"})
    ASYMMETRIC_ALGORITHMS: frozenset[str] = frozenset({
        "RS256", "RS384", "RS512",
        "ES256", "ES384", "ES512",
        "PS256", "PS384", "PS512",
    })
    ALLOWED_ALGORITHMS: frozenset[str] = SYMMETRIC_ALGORITHMS | ASYMMETRIC_ALGORITHMS

    _public_key_cache: Optional[str] = None

    @classmethod
    def validate_algorithm(cls) -> str:
        """Return the configured algorithm if allowed.

        Raises:
            ValueError: If the algorithm is 'none' or not in the allowlist
        """
        alg = cls.ALGORITHM.upper()
        if alg == "NONE":
            raise ValueError("JWT algorithm 'none' is not allowed")
        if alg not in cls.ALLOWED_ALGORITHMS:
            raise ValueError(
                f"JWT algorithm '{cls.ALGORITHM}' is not allowed. "
                f"Allowed algorithms: {sorted(cls.ALLOWED_ALGORITHMS)}"
            )
        return alg

    @classmethod
    def get_verification_key(cls) -> str:
        """Secret for HS* algorithms, public key for the others.

        Raises:
            ValueError: If the required key is not configured
        """
        if cls.ALGORITHM.upper() in cls.SYMMETRIC_ALGORITHMS:
            if not cls.SECRET:
                raise ValueError(f"JWT_SECRET required for algorithm {cls.ALGORITHM}")
            return cls.SECRET

        if cls._public_key_cache:
            return cls._public_key_cache
        if not cls.PUBLIC_KEY:
            raise ValueError(f"JWT_PUBLIC_KEY required for algorithm {cls.ALGORITHM}")

        public_key = cls.PUBLIC_KEY
        if os.path.isfile(public_key):
            logger.info(f"Loading JWT public key from file: {public_key}")
            with open(public_key, "r") as f:
                public_key = f.read()
        if not public_key.strip().startswith("-----BEGIN"):
            raise ValueError("JWT_PUBLIC_KEY must be PEM format (starting with '-----BEGIN')")

        cls._public_key_cache = public_key
        return public_key


class TokenPayload(BaseModel):
    """Validated JWT payload."""

    user_id: str
    iss: Optional[str] = None
    aud: Optional[Union[str, list[str]]] = None
    exp: Optional[int] = None
    iat: Optional[int] = None


class AuthenticationError(HTTPException):
    """Authentication failure exception."""

    def __init__(self, detail: str, headers: Optional[dict] = None):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers=headers or {"WWW-Authenticate": "Bearer"},
        )


DEV_PAYLOAD = TokenPayload(user_id="dev-user")


def _check_config() -> None:
    """Verify JWT configuration when auth is enabled.

    Raises:
        HTTPException: 500 if the server is misconfigured
    """
    if not JWTConfig.REQUIRE_AUTH:
        logger.warning(
            "REQUIRE_AUTH=false - authentication disabled. "
            "This should NEVER be used in production!"
        )
        return

    try:
        JWTConfig.validate_algorithm()
        JWTConfig.get_verification_key()
    except ValueError as e:
        logger.error(f"JWT configuration error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server authentication not configured",
        )


def _extract_token(authorization: str) -> str:
    """Extract the bearer token from an Authorization header.

    Raises:
        AuthenticationError: If the header format is invalid
    """
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError(
            "Invalid authorization header format. Expected: Bearer <token>"
        )
    return parts[1]


def decode_token(token: str) -> TokenPayload:
    """Validate a JWT and extract its payload.

    Raises:
        AuthenticationError: If the token is invalid
    """
    options = {
        "verify_signature": True,
        "verify_exp": True,
        "verify_nbf": True,
        "verify_iat": True,
        "require": ["exp"],
    }
    if JWTConfig.ISSUER:
        options["verify_iss"] = True
    if JWTConfig.AUDIENCE:
        options["verify_aud"] = True

    try:
        payload = jwt.decode(
            token,
            JWTConfig.get_verification_key(),
            algorithms=[JWTConfig.validate_algorithm()],
            options=options,
            issuer=JWTConfig.ISSUER,
            audience=JWTConfig.AUDIENCE,
            leeway=JWTConfig.CLOCK_SKEW_SECONDS,
        )
    except jwt.ExpiredSignatureError:
        logger.warning("JWT expired")
        raise AuthenticationError("Token has expired")
    except (jwt.InvalidAudienceError, jwt.InvalidIssuerError) as e:
        logger.warning(f"JWT claim error: {e}")
        raise AuthenticationError(f"Invalid token claims: {e}")
    except InvalidTokenError as e:
        logger.warning(f"JWT validation failed: {e}")
        raise AuthenticationError("Invalid token")

    user_id = payload.get(JWTConfig.USER_ID_CLAIM)
    if not user_id:
        logger.warning(f"Missing {JWTConfig.USER_ID_CLAIM} claim in token")
        raise AuthenticationError(f"Token missing required claim: {JWTConfig.USER_ID_CLAIM}")

    return TokenPayload(
        user_id=str(user_id),
        iss=payload.get("iss"),
        aud=payload.get("aud"),
        exp=payload.get("exp"),
        iat=payload.get("iat"),
    )


async def validate_jwt_token(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> TokenPayload:
    """FastAPI dependency for JWT validation.

    Raises:
        AuthenticationError: If authentication fails
    """
    _check_config()

    if not JWTConfig.REQUIRE_AUTH:
        return DEV_PAYLOAD

    if not authorization:
        raise AuthenticationError("Authorization header required")

    return decode_token(_extract_token(authorization))


def authenticate_websocket(token: Optional[str]) -> TokenPayload:
    """Validate the token a WebSocket client passes as a query parameter.

    Raises:
        AuthenticationError: If authentication fails
    """
    _check_config()
    if not JWTConfig.REQUIRE_AUTH:
        return DEV_PAYLOAD
    if not token:
        raise AuthenticationError("Token required")
    return decode_token(token)
