"""Pydantic schemas for conversations and the agent inbox."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

ConversationStatus = Literal["open", "closed", "snoozed"]
AIWorkflowState = Literal["none", "ai_handled", "handoff"]
SenderType = Literal["bot", "agent", "visitor"]


class Conversation(BaseModel):
    id: str
    tenant_id: UUID
    visitor_id: str | None = None
    status: ConversationStatus = "open"
    created_at: datetime
    updated_at: datetime | None = None
    last_message_at: datetime | None = None
    resolved_at: datetime | None = None
    ai_workflow_state: AIWorkflowState = "none"
    ai_handoff_reason: str | None = None
    ai_last_confidence: float | None = Field(default=None, ge=0, le=1)
    ai_last_response_at: datetime | None = None
    ai_state_version: int = 0

    @model_validator(mode="after")
    def _handoff_reason_tracks_state(self) -> "Conversation":
        if (self.ai_workflow_state == "handoff") != (self.ai_handoff_reason is not None):
            raise ValueError(
                "ai_handoff_reason must be set if and only if ai_workflow_state is 'handoff'"
            )
        return self


class ConversationMessage(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_type: SenderType
    content: str
    created_at: datetime


class AIWorkflowSummary(BaseModel):
    """Agent-facing view of how the automation last handled a conversation."""

    state: AIWorkflowState
    handoff_reason: str | None = None
    confidence: float | None = None
    last_response_at: datetime | None = None


class InboxConversation(Conversation):
    ai_workflow: AIWorkflowSummary
    last_message: ConversationMessage | None = None


class InboxPage(BaseModel):
    conversations: list[InboxConversation]
    next_cursor: str | None = None


class ConversationDetail(Conversation):
    messages: list[ConversationMessage] = Field(default_factory=list)


class StatusUpdateRequest(BaseModel):
    status: ConversationStatus
    release_to_ai: bool = Field(
        default=False,
        description="Reset the AI workflow state to 'none' so automation may answer again.",
    )
