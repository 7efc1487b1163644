"""Domain models and collaborator contracts used by the triage pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from .schemas import Conversation
from .workflow import AIWorkflowPatch

AI_SENDER_ID = "ai-agent"
SYSTEM_SENDER_ID = "system"


@dataclass
class HandoffResult:
    handoff_message: str
    # ``None`` when a concurrent run already moved the conversation and no
    # second notice was written.
    message_id: str | None
    delivered: bool = True


class ConversationAuthorizer(Protocol):
    def authorize(self, conversation_id: str, tenant_id: UUID) -> Conversation: ...


class BotMessageSender(Protocol):
    def send_bot_message(
        self, conversation_id: str, sender_id: str, content: str
    ) -> str: ...


class HandoffTrigger(Protocol):
    def trigger(
        self,
        conversation_id: str,
        reason: str | None = None,
        *,
        expected_version: int | None = None,
        confidence: float | None = None,
    ) -> HandoffResult: ...


class AIWorkflowWriter(Protocol):
    def write_ai_workflow(
        self,
        conversation_id: str,
        patch: AIWorkflowPatch,
        *,
        expected_version: int | None = None,
    ) -> Conversation | None: ...
