"""Pydantic schemas for the AI agent settings, triage and analytics APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

KnowledgeSourceName = Literal["articles", "internalArticles", "snippets"]
Feedback = Literal["helpful", "not_helpful"]

DEFAULT_HANDOFF_MESSAGE = "Let me connect you with a human agent who can help you better."
DEFAULT_MODEL = "openai/gpt-5-nano"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_CONFIDENCE_THRESHOLD = 0.6
CLOCK_TIME_PATTERN = r"^([01]?\d|2[0-3]):[0-5]\d$"


class WorkingHours(BaseModel):
    start: str = Field(..., pattern=CLOCK_TIME_PATTERN)
    end: str = Field(..., pattern=CLOCK_TIME_PATTERN)
    timezone: str = "UTC"


class AgentSettings(BaseModel):
    tenant_id: UUID
    enabled: bool = False
    knowledge_sources: list[KnowledgeSourceName] = Field(
        default_factory=lambda: ["articles"]
    )
    confidence_threshold: float = Field(default=DEFAULT_CONFIDENCE_THRESHOLD, ge=0, le=1)
    personality: str | None = None
    handoff_message: str = DEFAULT_HANDOFF_MESSAGE
    working_hours: WorkingHours | None = None
    model: str = DEFAULT_MODEL
    suggestions_enabled: bool = False
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    updated_at: datetime | None = None


class AgentSettingsUpdate(BaseModel):
    """Patchable settings fields.

    Omitted fields and ``None`` leave the stored value unchanged, except for
    ``personality`` and ``working_hours`` where an explicit ``null`` clears it.
    """

    enabled: bool | None = None
    knowledge_sources: list[KnowledgeSourceName] | None = None
    confidence_threshold: float | None = Field(default=None, ge=0, le=1)
    personality: str | None = None
    handoff_message: str | None = None
    working_hours: WorkingHours | None = None
    model: str | None = None
    suggestions_enabled: bool | None = None
    embedding_model: str | None = None


class AgentSettingsResponse(AgentSettings):
    last_config_error: Diagnostic | None = None


class Diagnostic(BaseModel):
    code: str
    message: str
    provider: str | None = None
    model: str | None = None
    detected_at: datetime | None = None


class KnowledgeSnippet(BaseModel):
    type: str
    id: str
    title: str
    content: str
    relevance_score: float = 0.0


class SourceReference(BaseModel):
    type: str
    id: str
    title: str


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class TriageRequest(BaseModel):
    query: str = Field(..., min_length=1)
    conversation_history: list[HistoryMessage] = Field(default_factory=list)


class TriageResult(BaseModel):
    response: str
    confidence: float
    sources: list[SourceReference] = Field(default_factory=list)
    handoff: bool
    handoff_reason: str | None = None
    message_id: str | None = None


class AIResponseRecord(BaseModel):
    id: str
    tenant_id: UUID
    conversation_id: str
    message_id: str | None = None
    query: str
    response: str
    sources: list[SourceReference] = Field(default_factory=list)
    confidence: float
    handed_off: bool
    handoff_reason: str | None = None
    generation_time_ms: int
    tokens_used: int | None = None
    model: str
    provider: str
    feedback: Feedback | None = None
    created_at: datetime


class FeedbackRequest(BaseModel):
    feedback: Feedback


class AnalyticsSummary(BaseModel):
    total_responses: int
    resolved_by_ai: int
    handed_off: int
    handoff_rate: float
    resolution_rate: float
    helpful_feedback: int
    not_helpful_feedback: int
    satisfaction_rate: float
    avg_response_time_ms: float
    avg_confidence: float


class ShouldRespond(BaseModel):
    should_respond: bool
    reason: str | None = None


class ModelOption(BaseModel):
    id: str
    name: str
    provider: str


AgentSettingsResponse.model_rebuild()
