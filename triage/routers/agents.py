"""AI agent API routes: triage, settings, diagnostics and analytics."""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import psycopg
from fastapi import APIRouter, Depends, HTTPException, Request

from ..agents import schemas
from ..agents.analytics import (
    DetachedPostgresResponseSink,
    PostgresResponseAnalyticsStore,
    ResponseNotFoundError,
)
from ..agents.diagnostics import DiagnosticRecorder, PostgresDiagnosticStore
from ..agents.generation import GenerationOrchestrator, OpenAITextGenerator
from ..agents.knowledge import PostgresKnowledgeRetriever
from ..agents.repository import PostgresAgentSettingsRepository
from ..agents.responses import GenerationPolicy
from ..agents.service import AgentSettingsService, TriagePipeline
from ..conversations.repository import PostgresConversationRepository
from ..conversations.service import ConversationService
from ..core.auth import require_tenant_id
from ..core.db import apply_tenant_settings
from ..core.rate_limit import RESPOND_RATE_LIMIT, limiter
from ..errors import ConversationNotFoundError, TenantMismatchError
from ..tasks import SideEffectRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["ai-agent"])

_DATABASE_URL = os.getenv("DATABASE_URL")
_GENERATOR = OpenAITextGenerator()


@dataclass
class AgentServices:
    pipeline: TriagePipeline
    settings: AgentSettingsService


def _get_conn() -> psycopg.Connection:
    if not _DATABASE_URL:
        raise HTTPException(status_code=500, detail="DATABASE_URL not configured")
    try:
        return psycopg.connect(_DATABASE_URL)
    except Exception as exc:  # pragma: no cover - defensive
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def build_services(
    conn: psycopg.Connection,
    tenant_id: UUID,
    runner: SideEffectRunner | None = None,
) -> AgentServices:
    """Wire the pipeline and settings service on one tenant-scoped connection."""

    settings_repo = PostgresAgentSettingsRepository(conn)
    conversations = ConversationService(
        PostgresConversationRepository(conn, tenant_id=tenant_id),
        settings_repository=settings_repo,
    )
    diagnostics = DiagnosticRecorder(PostgresDiagnosticStore(conn))
    analytics = PostgresResponseAnalyticsStore(conn)
    if runner is not None and _DATABASE_URL:
        # Runner jobs outlive the request connection.
        sink, side_effects = DetachedPostgresResponseSink(_DATABASE_URL), runner
    else:
        sink, side_effects = analytics, None
    pipeline = TriagePipeline(
        authorizer=conversations,
        sender=conversations,
        handoff_trigger=conversations,
        workflow_writer=conversations,
        settings_repository=settings_repo,
        knowledge=PostgresKnowledgeRetriever(conn),
        orchestrator=GenerationOrchestrator(_GENERATOR, GenerationPolicy.from_env()),
        diagnostics=diagnostics,
        analytics=sink,
        runner=side_effects,
    )
    return AgentServices(
        pipeline=pipeline,
        settings=AgentSettingsService(settings_repo, diagnostics, analytics),
    )


@contextmanager
def _service_context(
    tenant_id: UUID, runner: SideEffectRunner | None = None
) -> Iterator[AgentServices]:
    conn = _get_conn()
    try:
        apply_tenant_settings(conn, tenant_id)
    except Exception as exc:
        conn.close()
        raise HTTPException(status_code=500, detail="Failed to configure tenant") from exc
    services = build_services(conn, tenant_id, runner)
    try:
        yield services
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
    if isinstance(exc, (ConversationNotFoundError, ResponseNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TenantMismatchError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.exception("Unhandled AI agent API error")
    return HTTPException(status_code=500, detail="Internal server error")


def _runner(request: Request) -> SideEffectRunner | None:
    return getattr(request.app.state, "side_effects", None)


@router.post(
    "/conversations/{conversation_id}/respond",
    response_model=schemas.TriageResult,
)
@limiter.limit(RESPOND_RATE_LIMIT)
def respond(
    request: Request,
    conversation_id: str,
    payload: schemas.TriageRequest,
    tenant_id: UUID = Depends(require_tenant_id),
) -> schemas.TriageResult:
    """Answer the visitor's query automatically or hand off to a human."""
    with _service_context(tenant_id, _runner(request)) as services:
        return services.pipeline.respond(tenant_id, conversation_id, payload)


@router.get("/settings", response_model=schemas.AgentSettingsResponse)
def get_settings(
    tenant_id: UUID = Depends(require_tenant_id),
) -> schemas.AgentSettingsResponse:
    with _service_context(tenant_id) as services:
        return services.settings.get_settings(tenant_id)


@router.put("/settings", response_model=schemas.AgentSettingsResponse)
def update_settings(
    payload: schemas.AgentSettingsUpdate,
    tenant_id: UUID = Depends(require_tenant_id),
) -> schemas.AgentSettingsResponse:
    with _service_context(tenant_id) as services:
        return services.settings.update_settings(tenant_id, payload)


@router.get("/diagnostics", response_model=schemas.Diagnostic | None)
def get_diagnostics(
    tenant_id: UUID = Depends(require_tenant_id),
) -> schemas.Diagnostic | None:
    with _service_context(tenant_id) as services:
        return services.settings.get_diagnostic(tenant_id)


@router.get("/analytics", response_model=schemas.AnalyticsSummary)
def get_analytics(
    start: datetime | None = None,
    end: datetime | None = None,
    tenant_id: UUID = Depends(require_tenant_id),
) -> schemas.AnalyticsSummary:
    with _service_context(tenant_id) as services:
        return services.settings.analytics(tenant_id, start, end)


@router.post(
    "/responses/{response_id}/feedback", response_model=schemas.AIResponseRecord
)
def submit_feedback(
    response_id: str,
    payload: schemas.FeedbackRequest,
    tenant_id: UUID = Depends(require_tenant_id),
) -> schemas.AIResponseRecord:
    with _service_context(tenant_id) as services:
        return services.settings.submit_feedback(tenant_id, response_id, payload.feedback)


@router.get("/should-respond", response_model=schemas.ShouldRespond)
def should_respond(
    tenant_id: UUID = Depends(require_tenant_id),
) -> schemas.ShouldRespond:
    with _service_context(tenant_id) as services:
        return services.settings.should_respond(tenant_id)


@router.get("/models", response_model=list[schemas.ModelOption])
def list_models() -> list[schemas.ModelOption]:
    return AgentSettingsService.list_models()
