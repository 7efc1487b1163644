import pathlib
import sys
import uuid
from dataclasses import dataclass, field

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from triage.agents import schemas as agent_schemas
from triage.agents.analytics import InMemoryResponseAnalyticsStore
from triage.agents.diagnostics import DiagnosticRecorder, InMemoryDiagnosticStore
from triage.agents.generation import (
    GenerationOrchestrator,
    GenerationRequest,
    GenerationResult,
    TokenUsage,
)
from triage.agents.knowledge import InMemoryKnowledgeRetriever, KnowledgeDocument
from triage.agents.providers import ProviderRegistry
from triage.agents.repository import InMemoryAgentSettingsRepository
from triage.agents.responses import GenerationPolicy
from triage.agents.service import AgentSettingsService, TriagePipeline
from triage.app_logging import init_logging
from triage.conversations.repository import InMemoryConversationRepository
from triage.conversations.schemas import Conversation
from triage.conversations.service import ConversationService


class ScriptedGenerator:
    """TextGenerator returning (or raising) queued outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if not self.outcomes:
            raise AssertionError("generator called more often than scripted")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, GenerationResult):
            return outcome
        return GenerationResult(
            text=outcome,
            finish_reason="stop",
            usage=TokenUsage(total_tokens=10, input_tokens=7, output_tokens=3),
        )

    @property
    def calls(self) -> int:
        return len(self.requests)


@dataclass
class TriageHarness:
    tenant_id: uuid.UUID
    repository: InMemoryConversationRepository
    conversations: ConversationService
    settings_repository: InMemoryAgentSettingsRepository
    knowledge: InMemoryKnowledgeRetriever
    diagnostics: DiagnosticRecorder
    analytics: InMemoryResponseAnalyticsStore
    generator: ScriptedGenerator
    registry: ProviderRegistry
    conversation: Conversation
    handoff_trigger: object = None
    sender: object = None
    _pipeline: TriagePipeline | None = field(default=None, repr=False)

    def enable(self, **changes) -> agent_schemas.AgentSettings:
        update = agent_schemas.AgentSettingsUpdate(enabled=True, **changes)
        return self.settings_repository.upsert_settings(self.tenant_id, update)

    def script(self, *outcomes) -> ScriptedGenerator:
        self.generator.outcomes = list(outcomes)
        return self.generator

    @property
    def pipeline(self) -> TriagePipeline:
        if self._pipeline is None:
            self._pipeline = TriagePipeline(
                authorizer=self.conversations,
                sender=self.sender or self.conversations,
                handoff_trigger=self.handoff_trigger or self.conversations,
                workflow_writer=self.conversations,
                settings_repository=self.settings_repository,
                knowledge=self.knowledge,
                orchestrator=GenerationOrchestrator(self.generator, GenerationPolicy()),
                diagnostics=self.diagnostics,
                analytics=self.analytics,
                provider_registry=self.registry,
            )
        return self._pipeline

    def respond(self, query: str, conversation_id: str | None = None):
        return self.pipeline.respond(
            self.tenant_id,
            conversation_id or self.conversation.id,
            agent_schemas.TriageRequest(query=query),
        )

    def messages(self):
        return self.repository.list_messages(self.conversation.id)

    def current(self) -> Conversation:
        return self.repository.get_conversation(self.conversation.id)

    def settings_service(self) -> AgentSettingsService:
        return AgentSettingsService(self.settings_repository, self.diagnostics, self.analytics)


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def harness(tenant_id: uuid.UUID) -> TriageHarness:
    repository = InMemoryConversationRepository(tenant_id=tenant_id)
    settings_repository = InMemoryAgentSettingsRepository()
    knowledge = InMemoryKnowledgeRetriever(
        [
            KnowledgeDocument(
                tenant_id=tenant_id,
                type="article",
                id="kb-1",
                title="Reset your password",
                content="Open Settings and choose Reset password to receive a link.",
            )
        ]
    )
    return TriageHarness(
        tenant_id=tenant_id,
        repository=repository,
        conversations=ConversationService(
            repository, settings_repository=settings_repository
        ),
        settings_repository=settings_repository,
        knowledge=knowledge,
        diagnostics=DiagnosticRecorder(InMemoryDiagnosticStore()),
        analytics=InMemoryResponseAnalyticsStore(),
        generator=ScriptedGenerator(),
        registry=ProviderRegistry({"api_key": "sk-test"}),
        conversation=repository.create_conversation(visitor_id="visitor-1"),
    )


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
