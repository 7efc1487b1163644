"""Deterministic cursor pagination for the agent inbox.

Conversations are ordered by ``last_message_at`` (falling back to
``created_at``) newest first, with the id string as a descending tie-breaker
so the order is total even when timestamps collide. The cursor is simply the
id of the last conversation on the previous page.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from .schemas import AIWorkflowState, AIWorkflowSummary, Conversation, ConversationStatus

DEFAULT_INBOX_LIMIT = 50
MAX_INBOX_LIMIT = 100
MIN_INBOX_SCAN_LIMIT = 500
MAX_INBOX_SCAN_LIMIT = 5000

C = TypeVar("C", bound=Conversation)


@dataclass(frozen=True)
class InboxQuery:
    tenant_id: UUID
    status: ConversationStatus | None = None
    ai_workflow_state: AIWorkflowState | None = None
    limit: int | None = None
    cursor: str | None = None

    @property
    def page_size(self) -> int:
        return clamp_limit(self.limit)

    @property
    def scan_limit(self) -> int:
        """Upper bound on rows fetched before filtering and paging."""

        return min(max(self.page_size * 20, MIN_INBOX_SCAN_LIMIT), MAX_INBOX_SCAN_LIMIT)


@dataclass(frozen=True)
class InboxPageResult(Generic[C]):
    page: list[C]
    next_cursor: str | None
    sorted_ids: list[str]


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_INBOX_LIMIT
    return min(max(limit, 1), MAX_INBOX_LIMIT)


def inbox_timestamp(conversation: Conversation) -> datetime:
    return conversation.last_message_at or conversation.created_at


def inbox_sort_key(conversation: Conversation) -> tuple[datetime, str]:
    return inbox_timestamp(conversation), str(conversation.id)


def sort_for_inbox(conversations: Iterable[C]) -> list[C]:
    return sorted(conversations, key=inbox_sort_key, reverse=True)


def paginate_inbox(
    conversations: Sequence[C], limit: int | None, cursor: str | None = None
) -> InboxPageResult[C]:
    """Return the page that follows ``cursor``.

    An unknown cursor restarts from the first page instead of failing.
    """

    size = clamp_limit(limit)
    ordered = sort_for_inbox(conversations)
    sorted_ids = [str(item.id) for item in ordered]
    start = 0
    if cursor:
        try:
            start = sorted_ids.index(cursor) + 1
        except ValueError:
            start = 0
    page = ordered[start : start + size]
    has_more = start + size < len(ordered)
    next_cursor = str(page[-1].id) if has_more and page else None
    return InboxPageResult(page=page, next_cursor=next_cursor, sorted_ids=sorted_ids)


def matches_query(conversation: Conversation, query: InboxQuery) -> bool:
    if conversation.tenant_id != query.tenant_id:
        return False
    if query.status and conversation.status != query.status:
        return False
    if query.ai_workflow_state and conversation.ai_workflow_state != query.ai_workflow_state:
        return False
    return True


def summarize_ai_workflow(conversation: Conversation) -> AIWorkflowSummary:
    return AIWorkflowSummary(
        state=conversation.ai_workflow_state,
        handoff_reason=conversation.ai_handoff_reason,
        confidence=conversation.ai_last_confidence,
        last_response_at=conversation.ai_last_response_at,
    )
