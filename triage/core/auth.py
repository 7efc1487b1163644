"""Tenant token decoding for the triage API."""

from __future__ import annotations

import os
from typing import cast
from uuid import UUID

import jwt
from fastapi import HTTPException, Request, status
from typing_extensions import TypedDict
from jwt import ExpiredSignatureError, InvalidTokenError

__all__ = [
    "TenantTokenConfigurationError",
    "TenantTokenPayload",
    "TenantTokenValidationError",
    "decode_tenant_token",
    "get_tenant_context",
    "require_tenant_id",
    "tenant_tokens_configured",
]


class TenantTokenConfigurationError(RuntimeError):
    """Raised when the token settings are missing from the environment."""


class TenantTokenValidationError(ValueError):
    """Raised when a bearer token is expired, forged or incomplete."""


class _RequiredClaims(TypedDict):
    tenant_id: str
    sub: str


class TenantTokenPayload(_RequiredClaims, total=False):
    aud: str | list[str]
    exp: int
    iat: int
    iss: str
    role: str
    type: str


def _setting(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or not value.strip():
        raise TenantTokenConfigurationError(
            f"Environment variable '{name}' must be set for tenant token validation."
        )
    return value.strip()


def tenant_tokens_configured() -> bool:
    """Return ``True`` when every mandatory token setting is present."""

    return all(
        os.getenv(name)
        for name in (
            "TENANT_TOKEN_SECRET",
            "TENANT_TOKEN_AUDIENCE",
            "TENANT_TOKEN_ISSUER",
        )
    )


def decode_tenant_token(token: str) -> TenantTokenPayload:
    """Decode ``token`` and check signature, expiry, audience and issuer.

    Raises:
        TenantTokenConfigurationError: token settings are not configured.
        TenantTokenValidationError: the token cannot be trusted or lacks the
            ``tenant_id``/``sub`` claims.
    """

    secret = _setting("TENANT_TOKEN_SECRET")
    audience = _setting("TENANT_TOKEN_AUDIENCE")
    issuer = _setting("TENANT_TOKEN_ISSUER")
    algorithm = _setting("TENANT_TOKEN_ALGORITHM", "HS256")

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise TenantTokenValidationError("Tenant token has expired.") from exc
    except InvalidTokenError as exc:
        raise TenantTokenValidationError("Tenant token is invalid.") from exc

    if not payload.get("tenant_id") or not payload.get("sub"):
        raise TenantTokenValidationError(
            "Tenant token payload must include 'tenant_id' and 'sub'."
        )
    if payload.get("type", "access") != "access":
        raise TenantTokenValidationError("Tenant token must be an access token.")
    return cast(TenantTokenPayload, payload)


async def get_tenant_context(request: Request) -> TenantTokenPayload:
    """Resolve the bearer token on ``request`` into a tenant payload.

    Configuration problems surface as ``500`` and token problems as ``401``.
    """

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )
    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )
    try:
        return decode_tenant_token(credentials)
    except TenantTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    except TenantTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)
        ) from exc


def require_tenant_id(request: Request) -> UUID:
    """FastAPI dependency returning the tenant the request acts for.

    The tenant bound by ``TenantContextMiddleware`` wins. Without token
    settings (local development, tests) the ``X-Debug-Tenant`` header and
    then the ``TENANT_ID`` environment variable are accepted instead.
    """

    tenant = getattr(request.state, "tenant_id", None)
    if tenant is None and not tenant_tokens_configured():
        tenant = request.headers.get("X-Debug-Tenant") or os.getenv("TENANT_ID")
    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Tenant context missing"
        )
    try:
        return UUID(str(tenant))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid tenant identifier"
        ) from exc
