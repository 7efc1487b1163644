"""Request-scoped tenant identity.

``TenantContextMiddleware`` stores the decoded tenant token here for the
lifetime of a request. Services and repositories call
:func:`get_current_tenant_id` instead of threading the HTTP request through
every layer; background work that runs outside a request sees ``None`` and
must pass the tenant explicitly.
"""

from __future__ import annotations

from contextvars import ContextVar, Token
from typing_extensions import TypedDict

__all__ = [
    "TenantRuntimeContext",
    "get_current_actor_id",
    "get_current_tenant_id",
    "reset_tenant_context",
    "set_tenant_context",
]


class TenantRuntimeContext(TypedDict):
    tenant_id: str
    actor_id: str


_tenant_context: ContextVar[TenantRuntimeContext | None] = ContextVar(
    "triage_tenant_context", default=None
)


def set_tenant_context(
    tenant_id: str, actor_id: str
) -> Token[TenantRuntimeContext | None]:
    """Bind ``tenant_id``/``actor_id`` to the current context.

    The returned token must be handed back to :func:`reset_tenant_context`
    once the request finishes.
    """

    return _tenant_context.set({"tenant_id": tenant_id, "actor_id": actor_id})


def reset_tenant_context(token: Token[TenantRuntimeContext | None]) -> None:
    _tenant_context.reset(token)


def get_current_tenant_id() -> str | None:
    context = _tenant_context.get()
    return context["tenant_id"] if context else None


def get_current_actor_id() -> str | None:
    """Return the agent or visitor identifier carried by the tenant token."""

    context = _tenant_context.get()
    return context["actor_id"] if context else None
