"""Triage pipeline and the AI agent settings service."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..conversations.models import (
    AI_SENDER_ID,
    AIWorkflowWriter,
    BotMessageSender,
    ConversationAuthorizer,
    HandoffTrigger,
)
from ..conversations.schemas import Conversation
from ..conversations.workflow import ai_handled
from ..errors import ConfigurationError, EmptyOutputError, GenerationError
from ..tasks import SideEffectRunner
from . import schemas
from .analytics import ResponseAnalyticsStore, ResponseSink, summarize_responses
from .diagnostics import DiagnosticRecorder
from .generation import GenerationOrchestrator
from .knowledge import DEFAULT_KNOWLEDGE_LIMIT, KnowledgeRetriever
from .prompts import build_knowledge_context, build_system_prompt
from .providers import (
    AVAILABLE_MODELS,
    EMPTY_GENERATION_RESPONSE,
    GENERATION_FAILED,
    ProviderRegistry,
    parse_model,
    validate_model_configuration,
)
from .repository import AgentSettingsRepository
from .scoring import calculate_confidence, decide_handoff

logger = logging.getLogger(__name__)

DISABLED_REASON = "AI Agent is disabled"
GENERATION_FAILED_REASON = "AI generation failed"
EMPTY_RESPONSE_REASON = "AI returned an empty response"
APOLOGY_MESSAGE = (
    "I'm having trouble processing your request right now. "
    "Let me connect you with a human agent."
)
OUTSIDE_WORKING_HOURS_REASON = "Outside working hours"
DEFAULT_ANALYTICS_WINDOW = timedelta(days=30)


class TriagePipeline:
    """Answer a visitor query automatically or hand the conversation off.

    Every run ends with a new message in the conversation: the generated
    answer, the tenant's handoff notice, or (when the handoff itself cannot be
    written) a generic apology. Only precondition failures raised by the
    authorizer escape :meth:`respond`.
    """

    def __init__(
        self,
        *,
        authorizer: ConversationAuthorizer,
        sender: BotMessageSender,
        handoff_trigger: HandoffTrigger,
        workflow_writer: AIWorkflowWriter,
        settings_repository: AgentSettingsRepository,
        knowledge: KnowledgeRetriever,
        orchestrator: GenerationOrchestrator,
        diagnostics: DiagnosticRecorder,
        analytics: ResponseSink,
        runner: Optional[SideEffectRunner] = None,
        provider_registry: Optional[ProviderRegistry] = None,
    ) -> None:
        self._authorizer = authorizer
        self._sender = sender
        self._handoff = handoff_trigger
        self._writer = workflow_writer
        self._settings = settings_repository
        self._knowledge = knowledge
        self._orchestrator = orchestrator
        self._diagnostics = diagnostics
        self._analytics = analytics
        self._runner = runner
        self._providers = provider_registry or ProviderRegistry()

    def respond(
        self,
        tenant_id: UUID,
        conversation_id: str,
        request: schemas.TriageRequest,
    ) -> schemas.TriageResult:
        started = time.monotonic()
        conversation = self._authorizer.authorize(conversation_id, tenant_id)
        # AI state writes below are conditional on this version.
        version = conversation.ai_state_version
        settings = self._settings.get_settings(tenant_id)

        if not settings.enabled:
            return self._hand_off(conversation_id, DISABLED_REASON, version)

        provider, _ = parse_model(settings.model or "")
        try:
            return self._answer(conversation, settings, request, started)
        except ConfigurationError as exc:
            self._record(tenant_id, exc.code, exc.message, exc.provider, exc.model)
            return self._hand_off(conversation_id, exc.message, version)
        except EmptyOutputError as exc:
            self._record(
                tenant_id,
                EMPTY_GENERATION_RESPONSE,
                f"{exc}. Attempts: {exc.attempt_metadata}",
                provider,
                settings.model,
            )
            return self._hand_off(conversation_id, EMPTY_RESPONSE_REASON, version)
        except GenerationError as exc:
            self._record(
                tenant_id,
                GENERATION_FAILED,
                f"AI generation failed: {exc}",
                provider,
                settings.model,
            )
            return self._hand_off(conversation_id, GENERATION_FAILED_REASON, version)

    # ------------------------------------------------------------------
    # Internal steps

    def _answer(
        self,
        conversation: Conversation,
        settings: schemas.AgentSettings,
        request: schemas.TriageRequest,
        started: float,
    ) -> schemas.TriageResult:
        tenant_id = conversation.tenant_id
        diagnostic = validate_model_configuration(
            settings.model, credentials_present=self._providers.credentials_present()
        )
        if diagnostic is not None:
            raise ConfigurationError(
                diagnostic.code,
                diagnostic.message,
                provider=diagnostic.provider,
                model=diagnostic.model,
            )
        self._clear(tenant_id)

        snippets = self._retrieve(tenant_id, request.query, settings.knowledge_sources)
        system_prompt = build_system_prompt(
            settings.personality, build_knowledge_context(snippets)
        )
        provider, model_name = parse_model(settings.model)
        outcome = self._orchestrator.run(
            model_name, system_prompt, request.conversation_history, request.query
        )
        outcome.raise_for_failure()
        generation_time_ms = int((time.monotonic() - started) * 1000)

        confidence = calculate_confidence(outcome.text, snippets)
        decision = decide_handoff(
            outcome.text, confidence, settings.confidence_threshold, request.query
        )
        sources = [
            schemas.SourceReference(type=s.type, id=s.id, title=s.title) for s in snippets
        ]
        message_id = self._sender.send_bot_message(conversation.id, AI_SENDER_ID, outcome.text)

        record = schemas.AIResponseRecord(
            id=uuid4().hex,
            tenant_id=tenant_id,
            conversation_id=conversation.id,
            message_id=message_id,
            query=request.query,
            response=outcome.text,
            sources=sources,
            confidence=confidence,
            handed_off=decision.handoff,
            handoff_reason=decision.reason,
            generation_time_ms=generation_time_ms,
            tokens_used=outcome.usage.total_tokens,
            model=settings.model,
            provider=provider,
            created_at=datetime.now(timezone.utc),
        )
        self._store_response(record)

        if decision.handoff:
            try:
                self._handoff.trigger(
                    conversation.id,
                    decision.reason,
                    expected_version=conversation.ai_state_version,
                    confidence=confidence,
                )
            except Exception:
                # The answer is already in the conversation; no apology needed.
                logger.exception("Handoff after answer failed for %s", conversation.id)
        else:
            self._mark_ai_handled(conversation, confidence)

        return schemas.TriageResult(
            response=outcome.text,
            confidence=confidence,
            sources=sources,
            handoff=decision.handoff,
            handoff_reason=decision.reason,
            message_id=message_id,
        )

    def _retrieve(
        self, tenant_id: UUID, query: str, sources: List[str]
    ) -> List[schemas.KnowledgeSnippet]:
        try:
            return self._knowledge.retrieve(
                tenant_id, query, sources, limit=DEFAULT_KNOWLEDGE_LIMIT
            )
        except Exception:
            logger.warning(
                "Knowledge retrieval failed for tenant %s; answering without sources",
                tenant_id,
                exc_info=True,
            )
            return []

    def _mark_ai_handled(self, conversation: Conversation, confidence: float) -> None:
        patch = ai_handled(conversation, confidence, datetime.now(timezone.utc))
        try:
            updated = self._writer.write_ai_workflow(
                conversation.id, patch, expected_version=conversation.ai_state_version
            )
        except Exception:
            logger.exception("Failed to store AI workflow state for %s", conversation.id)
            return
        if updated is None:
            logger.info(
                "AI state for %s changed during the run; keeping the newer state",
                conversation.id,
            )

    def _hand_off(
        self, conversation_id: str, reason: str, version: int
    ) -> schemas.TriageResult:
        try:
            result = self._handoff.trigger(
                conversation_id, reason, expected_version=version
            )
        except Exception:
            logger.exception(
                "Handoff failed for %s; sending fallback apology", conversation_id
            )
            message_id = self._sender.send_bot_message(
                conversation_id, AI_SENDER_ID, APOLOGY_MESSAGE
            )
            return schemas.TriageResult(
                response=APOLOGY_MESSAGE,
                confidence=0.0,
                handoff=True,
                handoff_reason=reason,
                message_id=message_id,
            )
        return schemas.TriageResult(
            response=result.handoff_message,
            confidence=0.0,
            handoff=True,
            handoff_reason=reason,
            message_id=result.message_id,
        )

    def _record(
        self,
        tenant_id: UUID,
        code: str,
        message: str,
        provider: Optional[str],
        model: Optional[str],
    ) -> None:
        try:
            self._diagnostics.record(tenant_id, code, message, provider, model)
        except Exception:
            logger.exception("Failed to record AI diagnostic %s", code)

    def _clear(self, tenant_id: UUID) -> None:
        try:
            self._diagnostics.clear(tenant_id)
        except Exception:
            logger.exception("Failed to clear AI diagnostic for tenant %s", tenant_id)

    def _store_response(self, record: schemas.AIResponseRecord) -> None:
        if self._runner is None:
            try:
                self._analytics.append(record)
            except Exception:
                logger.exception("Failed to store AI response %s", record.id)
            return
        self._runner.submit(f"ai-response:{record.id}", lambda: self._analytics.append(record))


class AgentSettingsService:
    """Settings, diagnostics, analytics and feedback for a tenant's AI agent."""

    def __init__(
        self,
        repository: AgentSettingsRepository,
        diagnostics: DiagnosticRecorder,
        analytics: ResponseAnalyticsStore,
    ) -> None:
        self._repository = repository
        self._diagnostics = diagnostics
        self._analytics = analytics

    def get_settings(self, tenant_id: UUID) -> schemas.AgentSettingsResponse:
        settings = self._repository.get_settings(tenant_id)
        return schemas.AgentSettingsResponse(
            **settings.model_dump(),
            last_config_error=self._diagnostics.get(tenant_id),
        )

    def update_settings(
        self, tenant_id: UUID, payload: schemas.AgentSettingsUpdate
    ) -> schemas.AgentSettingsResponse:
        settings = self._repository.upsert_settings(tenant_id, payload)
        # A stale error would describe the previous configuration.
        self._diagnostics.clear(tenant_id)
        return schemas.AgentSettingsResponse(**settings.model_dump(), last_config_error=None)

    def get_diagnostic(self, tenant_id: UUID) -> Optional[schemas.Diagnostic]:
        return self._diagnostics.get(tenant_id)

    def should_respond(
        self, tenant_id: UUID, now: Optional[datetime] = None
    ) -> schemas.ShouldRespond:
        settings = self._repository.get_settings(tenant_id)
        if not settings.enabled:
            return schemas.ShouldRespond(should_respond=False, reason=DISABLED_REASON)
        if settings.working_hours and not _within_working_hours(
            settings.working_hours, now or datetime.now(timezone.utc)
        ):
            return schemas.ShouldRespond(
                should_respond=False, reason=OUTSIDE_WORKING_HOURS_REASON
            )
        return schemas.ShouldRespond(should_respond=True)

    @staticmethod
    def list_models() -> List[schemas.ModelOption]:
        return list(AVAILABLE_MODELS)

    def analytics(
        self,
        tenant_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> schemas.AnalyticsSummary:
        end = end or datetime.now(timezone.utc)
        start = start or end - DEFAULT_ANALYTICS_WINDOW
        return summarize_responses(self._analytics.list_responses(tenant_id, start, end))

    def submit_feedback(
        self, tenant_id: UUID, response_id: str, feedback: str
    ) -> schemas.AIResponseRecord:
        return self._analytics.set_feedback(tenant_id, response_id, feedback)


def _minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def _within_working_hours(hours: schemas.WorkingHours, now: datetime) -> bool:
    try:
        zone = ZoneInfo(hours.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown working hours timezone %r; using UTC", hours.timezone)
        zone = ZoneInfo("UTC")
    local = now.astimezone(zone)
    current = local.hour * 60 + local.minute
    start, end = _minutes(hours.start), _minutes(hours.end)
    if start <= end:
        return start <= current < end
    # Overnight window, e.g. 22:00-06:00.
    return current >= start or current < end
