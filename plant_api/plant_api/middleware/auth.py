"""Authentication middleware that extracts and validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates
it via :class:`TokenManager`, and populates ``request.state`` with ``sub``
(profile id), ``role``, ``scopes`` and ``identity_kind``.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication; the MPESA
callback is among them because the provider cannot carry our tokens.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from plant_api.security import AuthMode, TokenConfig, TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/auth/signup",
        "/api/v1/auth/login",
        "/api/v1/auth/password",
        "/api/v1/payments/callback",
    }
)

# Prefixes that skip auth (static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def build_token_config() -> TokenConfig:
    """Construct a :class:`TokenConfig` from environment variables.

    - ``AUTH_MODE``: ``development`` (default) or ``jwt``.
    - ``JWT_SECRET``: signing secret.  Required outside development; in
      development a random per-process secret is generated when unset.
    - ``JWT_ALGORITHM``: defaults to ``HS256``.
    - ``TOKEN_TTL_SECONDS`` / ``MAX_TOKEN_TTL_SECONDS``: token lifetime.
    """
    auth_mode_raw = os.environ.get("AUTH_MODE", "development").lower()
    try:
        auth_mode = AuthMode(auth_mode_raw)
    except ValueError:
        logger.warning("Unknown AUTH_MODE '%s'; falling back to development", auth_mode_raw)
        auth_mode = AuthMode.DEVELOPMENT

    jwt_secret_value = os.environ.get("JWT_SECRET", "")
    if not jwt_secret_value:
        if auth_mode == AuthMode.DEVELOPMENT:
            jwt_secret_value = f"dev-{secrets.token_hex(32)}"
            logger.warning(
                "JWT_SECRET not set; generated random per-process dev secret. "
                "Tokens will not survive process restarts."
            )
        else:
            raise RuntimeError(
                f"JWT_SECRET environment variable must be set when AUTH_MODE={auth_mode.value}. "
                "Refusing to start with an insecure default secret."
            )

    return TokenConfig(
        auth_mode=auth_mode,
        jwt_secret=SecretStr(jwt_secret_value),
        jwt_algorithm=os.environ.get("JWT_ALGORITHM", "HS256"),
        token_ttl_seconds=int(os.environ.get("TOKEN_TTL_SECONDS", "3600")),
        max_token_ttl_seconds=int(os.environ.get("MAX_TOKEN_TTL_SECONDS", "86400")),
    )


_token_manager: TokenManager | None = None


def get_token_manager() -> TokenManager:
    """Process-wide :class:`TokenManager` shared by the middleware and login."""
    global _token_manager  # noqa: PLW0603
    if _token_manager is None:
        _token_manager = TokenManager(build_token_config())
    return _token_manager


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Skips public paths (health, docs, login, payment callback).
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``sub``, ``role``, ``scopes`` and ``identity_kind`` on
       ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._token_manager = get_token_manager()
        logger.info("AuthenticationMiddleware initialised (mode=%s)", self._token_manager.auth_mode.value)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(status_code=401, content={"detail": "Missing Authorization header"})

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Expired tokens are 403; anything else is 401.
            if "expired" in error_msg.lower():
                return JSONResponse(status_code=403, content={"detail": "Token has expired"})
            return JSONResponse(status_code=401, content={"detail": f"Invalid token: {error_msg}"})

        request.state.sub = claims.sub
        request.state.role = claims.role or "member"
        request.state.scopes = claims.scopes
        request.state.identity_kind = claims.identity_kind
        return await call_next(request)
