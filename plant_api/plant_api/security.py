"""Bearer token issuance and validation.

Two token formats are supported, selected by :class:`AuthMode`:

``development``
    ``bmdev.<urlsafe-b64 JSON payload>.<hex HMAC-SHA256 of the payload>``.
    Cheap to mint in tests and local tooling.

``jwt``
    Standard HS256 (or ``JWT_ALGORITHM``) JSON Web Tokens via PyJWT.

Both carry the same claims: ``sub`` (profile id), ``role``, ``iat``,
``exp``, ``jti``, ``scopes`` and ``identity_kind``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from enum import Enum
from typing import Any

import jwt
from pydantic import BaseModel, Field, SecretStr, ValidationError

logger = logging.getLogger(__name__)

_DEV_PREFIX = "bmdev."
_ISSUER = "plant"


class AuthMode(str, Enum):
    """Token format accepted by the API."""

    DEVELOPMENT = "development"
    JWT = "jwt"


class TokenConfig(BaseModel):
    """Signing parameters shared by issuance and validation."""

    auth_mode: AuthMode = AuthMode.DEVELOPMENT
    jwt_secret: SecretStr
    jwt_algorithm: str = "HS256"
    token_ttl_seconds: int = Field(default=3600, gt=0)
    max_token_ttl_seconds: int = Field(default=86400, gt=0)


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str
    role: str = "member"
    iss: str = _ISSUER
    iat: float = Field(default_factory=time.time)
    exp: float = 0.0
    scopes: list[str] = Field(default_factory=lambda: ["read", "write"])
    jti: str = Field(default_factory=lambda: uuid.uuid4().hex)
    identity_kind: str = "user"


class TokenManager:
    """Mint and check bearer tokens according to a :class:`TokenConfig`."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._secret = config.jwt_secret.get_secret_value().encode("utf-8")

    @property
    def auth_mode(self) -> AuthMode:
        return self._config.auth_mode

    def generate_token(
        self,
        sub: str,
        role: str = "member",
        *,
        scopes: list[str] | None = None,
        ttl_seconds: int | None = None,
        identity_kind: str = "user",
    ) -> str:
        """Issue a token for *sub*.

        ``ttl_seconds`` is capped at ``max_token_ttl_seconds``.
        """
        ttl = min(ttl_seconds or self._config.token_ttl_seconds, self._config.max_token_ttl_seconds)
        now = time.time()
        claims = TokenClaims(
            sub=sub,
            role=role,
            iat=now,
            exp=now + ttl,
            scopes=scopes or ["read", "write"],
            identity_kind=identity_kind,
        )
        payload = claims.model_dump()

        if self._config.auth_mode is AuthMode.JWT:
            return jwt.encode(payload, self._secret, algorithm=self._config.jwt_algorithm)

        payload_json = json.dumps(payload)
        signature = hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{_DEV_PREFIX}{encoded}.{signature}"

    def validate_token(self, token: str) -> TokenClaims:
        """Return the claims of a valid token.

        Raises
        ------
        PermissionError
            If the token is malformed, badly signed or expired.  The
            message contains ``expired`` for expired tokens.
        """
        if token.startswith(_DEV_PREFIX):
            payload = self._decode_dev_token(token)
        elif self._config.auth_mode is AuthMode.JWT:
            payload = self._decode_jwt(token)
        else:
            raise PermissionError("Unsupported token format")

        try:
            claims = TokenClaims.model_validate(payload)
        except ValidationError as exc:
            raise PermissionError("Malformed token claims") from exc

        if claims.exp and claims.exp < time.time():
            raise PermissionError("Token has expired")
        return claims

    def _decode_dev_token(self, token: str) -> dict[str, Any]:
        if self._config.auth_mode is not AuthMode.DEVELOPMENT:
            raise PermissionError("Development tokens are disabled")
        body = token[len(_DEV_PREFIX) :]
        encoded, sep, signature = body.rpartition(".")
        if not sep or not encoded:
            raise PermissionError("Malformed development token")
        try:
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise PermissionError("Malformed development token") from exc

        expected = hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise PermissionError("Bad token signature")
        try:
            payload = json.loads(payload_json)
        except json.JSONDecodeError as exc:
            raise PermissionError("Malformed development token") from exc
        if not isinstance(payload, dict):
            raise PermissionError("Malformed development token")
        return payload

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._config.jwt_algorithm],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise PermissionError("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.debug("JWT rejected: %s", exc)
            raise PermissionError("Invalid token") from exc
