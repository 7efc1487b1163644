"""Middleware that binds the caller's tenant to each request."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .auth import get_tenant_context, tenant_tokens_configured
from .tenant_context import reset_tenant_context, set_tenant_context

__all__ = ["TenantContextMiddleware"]

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = frozenset({"/api/health", "/api/version", "/api/metrics"})


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Decode the bearer token and expose the tenant on ``request.state``.

    When token settings are absent (local development, tests) the middleware
    is a pass-through and routers fall back to ``X-Debug-Tenant``.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        if not tenant_tokens_configured() or self._should_bypass(request):
            return await call_next(request)

        try:
            payload = await get_tenant_context(request)
        except HTTPException as exc:
            headers = dict(exc.headers or {})
            if exc.status_code == status.HTTP_401_UNAUTHORIZED:
                headers.setdefault("WWW-Authenticate", "Bearer")
            logger.info(
                "Rejected request to %s: %s", request.url.path, exc.detail
            )
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail},
                headers=headers or None,
            )

        request.state.tenant_id = payload["tenant_id"]
        request.state.actor_id = payload["sub"]
        token = set_tenant_context(payload["tenant_id"], payload["sub"])
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)

    @staticmethod
    def _should_bypass(request: Request) -> bool:
        return request.method.upper() == "OPTIONS" or request.url.path in _PUBLIC_PATHS
