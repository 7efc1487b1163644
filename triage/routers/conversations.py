"""Agent inbox and conversation management API routes."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

import psycopg
from fastapi import APIRouter, Depends, HTTPException, Query

from ..agents.repository import PostgresAgentSettingsRepository
from ..conversations import schemas as convo_schemas
from ..conversations.inbox import DEFAULT_INBOX_LIMIT, MAX_INBOX_LIMIT, InboxQuery
from ..conversations.repository import PostgresConversationRepository
from ..conversations.service import ConversationService
from ..core.auth import require_tenant_id
from ..core.db import apply_tenant_settings
from ..errors import ConversationNotFoundError, TenantMismatchError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])

_DATABASE_URL = os.getenv("DATABASE_URL")


def _get_conn() -> psycopg.Connection:
    if not _DATABASE_URL:
        raise HTTPException(status_code=500, detail="DATABASE_URL not configured")
    try:
        return psycopg.connect(_DATABASE_URL)
    except Exception as exc:  # pragma: no cover - defensive
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@contextmanager
def _service_context(tenant_id: UUID) -> Iterator[ConversationService]:
    conn = _get_conn()
    try:
        apply_tenant_settings(conn, tenant_id)
    except Exception as exc:
        conn.close()
        raise HTTPException(status_code=500, detail="Failed to configure tenant") from exc
    service = ConversationService(
        PostgresConversationRepository(conn, tenant_id=tenant_id),
        settings_repository=PostgresAgentSettingsRepository(conn),
    )
    try:
        yield service
        conn.commit()
    except HTTPException:
        conn.rollback()
        raise
    except Exception as exc:
        conn.rollback()
        raise _to_http_error(exc) from exc
    finally:
        conn.close()


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ConversationNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TenantMismatchError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.exception("Unhandled conversation API error")
    return HTTPException(status_code=500, detail="Internal server error")


@router.get("/api/inbox", response_model=convo_schemas.InboxPage)
def list_inbox(
    status: convo_schemas.ConversationStatus | None = None,
    ai_workflow_state: convo_schemas.AIWorkflowState | None = None,
    limit: int = Query(DEFAULT_INBOX_LIMIT, ge=1, le=MAX_INBOX_LIMIT),
    cursor: str | None = None,
    tenant_id: UUID = Depends(require_tenant_id),
) -> convo_schemas.InboxPage:
    """Return one inbox page, newest activity first."""
    query = InboxQuery(
        tenant_id=tenant_id,
        status=status,
        ai_workflow_state=ai_workflow_state,
        limit=limit,
        cursor=cursor,
    )
    with _service_context(tenant_id) as conversations:
        return conversations.list_inbox(query)


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=convo_schemas.ConversationDetail,
)
def get_conversation(
    conversation_id: str,
    tenant_id: UUID = Depends(require_tenant_id),
) -> convo_schemas.ConversationDetail:
    with _service_context(tenant_id) as conversations:
        return conversations.get_conversation_detail(conversation_id, tenant_id)


@router.post(
    "/api/conversations/{conversation_id}/status",
    response_model=convo_schemas.Conversation,
)
def update_status(
    conversation_id: str,
    payload: convo_schemas.StatusUpdateRequest,
    tenant_id: UUID = Depends(require_tenant_id),
) -> convo_schemas.Conversation:
    """Change the status; ``release_to_ai`` also clears a handoff."""
    with _service_context(tenant_id) as conversations:
        return conversations.update_status(conversation_id, tenant_id, payload)
