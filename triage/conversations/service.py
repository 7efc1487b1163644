"""Conversation access, message delivery, handoff and inbox queries."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from ..agents import schemas as agent_schemas
from ..agents.repository import AgentSettingsRepository
from ..errors import ConversationNotFoundError, DeliveryError, TenantMismatchError
from . import schemas
from .inbox import InboxQuery, matches_query, paginate_inbox, summarize_ai_workflow
from .models import SYSTEM_SENDER_ID, HandoffResult
from .repository import ConversationRepository
from .workflow import AIWorkflowPatch, handoff

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationService:
    """Coordinates persistence and AI workflow state for conversations.

    The service fulfils the collaborator contracts the triage pipeline relies
    on (authorizer, bot message sender, handoff trigger and workflow writer)
    and serves the agent inbox.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        *,
        settings_repository: AgentSettingsRepository | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings_repository

    # ------------------------------------------------------------------
    # Pipeline collaborators

    def authorize(self, conversation_id: str, tenant_id: UUID) -> schemas.Conversation:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        if conversation.tenant_id != tenant_id:
            raise TenantMismatchError("Conversation does not belong to tenant")
        return conversation

    def send_bot_message(self, conversation_id: str, sender_id: str, content: str) -> str:
        message = self._repository.add_message(conversation_id, sender_id, "bot", content)
        return message.id

    def write_ai_workflow(
        self,
        conversation_id: str,
        patch: AIWorkflowPatch,
        *,
        expected_version: int | None = None,
    ) -> schemas.Conversation | None:
        with self._repository.atomic():
            return self._repository.write_ai_workflow(
                conversation_id, patch, expected_version=expected_version
            )

    def trigger(
        self,
        conversation_id: str,
        reason: str | None = None,
        *,
        expected_version: int | None = None,
        confidence: float | None = None,
    ) -> HandoffResult:
        """Hand the conversation to humans and post the tenant's handoff notice.

        The state write is a compare-and-swap against ``expected_version``.
        When another run got there first nothing is posted and the result
        carries ``delivered=False``. The state write and the notice share one
        savepoint, so a failure leaves neither behind and the request
        transaction usable.
        """

        try:
            with self._repository.atomic():
                return self._trigger(conversation_id, reason, expected_version, confidence)
        except Exception as exc:
            raise DeliveryError(
                f"Handoff for conversation {conversation_id} failed: {exc}"
            ) from exc

    def _trigger(
        self,
        conversation_id: str,
        reason: str | None,
        expected_version: int | None,
        confidence: float | None,
    ) -> HandoffResult:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        handoff_message = self._handoff_message(conversation.tenant_id)
        updated = self._repository.write_ai_workflow(
            conversation_id,
            handoff(reason, _utcnow(), confidence=confidence),
            expected_version=expected_version,
        )
        if updated is None:
            logger.info(
                "Skipped handoff notice for %s: AI state changed concurrently",
                conversation_id,
            )
            return HandoffResult(
                handoff_message=handoff_message, message_id=None, delivered=False
            )
        message = self._repository.add_message(
            conversation_id, SYSTEM_SENDER_ID, "bot", handoff_message
        )
        return HandoffResult(handoff_message=handoff_message, message_id=message.id)

    def _handoff_message(self, tenant_id: UUID) -> str:
        if self._settings is None:
            return agent_schemas.DEFAULT_HANDOFF_MESSAGE
        settings = self._settings.get_settings(tenant_id)
        return settings.handoff_message or agent_schemas.DEFAULT_HANDOFF_MESSAGE

    # ------------------------------------------------------------------
    # Inbox and agent actions

    def list_inbox(self, query: InboxQuery) -> schemas.InboxPage:
        fetched = self._repository.fetch_for_inbox(
            query.tenant_id,
            status=query.status,
            ai_workflow_state=query.ai_workflow_state,
            scan_limit=query.scan_limit,
        )
        # The fetch may over-return; only rows matching the query are paged.
        candidates = [c for c in fetched if matches_query(c, query)]
        result = paginate_inbox(candidates, query.page_size, query.cursor)
        conversations = [
            schemas.InboxConversation(
                **conversation.model_dump(),
                ai_workflow=summarize_ai_workflow(conversation),
                last_message=self._repository.last_message(conversation.id),
            )
            for conversation in result.page
        ]
        return schemas.InboxPage(conversations=conversations, next_cursor=result.next_cursor)

    def get_conversation_detail(
        self, conversation_id: str, tenant_id: UUID
    ) -> schemas.ConversationDetail:
        conversation = self.authorize(conversation_id, tenant_id)
        return schemas.ConversationDetail(
            **conversation.model_dump(),
            messages=self._repository.list_messages(conversation_id),
        )

    def update_status(
        self,
        conversation_id: str,
        tenant_id: UUID,
        request: schemas.StatusUpdateRequest,
    ) -> schemas.Conversation:
        self.authorize(conversation_id, tenant_id)
        conversation = self._repository.update_status(conversation_id, request.status)
        if request.release_to_ai:
            conversation = self._repository.reset_ai_workflow(conversation_id)
            logger.info("Conversation %s released back to automation", conversation_id)
        return conversation
