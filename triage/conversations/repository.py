"""Persistence for conversations, their messages and AI workflow state."""
from __future__ import annotations

import threading
from contextlib import AbstractContextManager, nullcontext
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID, uuid4

import psycopg
from psycopg.rows import dict_row

from triage.core.db import get_required_tenant_id

from . import schemas
from .inbox import sort_for_inbox
from .workflow import AIWorkflowPatch, apply_patch, apply_status, reset_ai_workflow


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationRepository(Protocol):
    """Abstraction for persisting conversation artefacts."""

    def create_conversation(
        self,
        visitor_id: Optional[str] = None,
        *,
        created_at: Optional[datetime] = None,
    ) -> schemas.Conversation: ...

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]: ...

    def add_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_type: str,
        content: str,
    ) -> schemas.ConversationMessage: ...

    def list_messages(self, conversation_id: str) -> List[schemas.ConversationMessage]: ...

    def last_message(self, conversation_id: str) -> Optional[schemas.ConversationMessage]: ...

    def write_ai_workflow(
        self,
        conversation_id: str,
        patch: AIWorkflowPatch,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[schemas.Conversation]: ...

    def reset_ai_workflow(self, conversation_id: str) -> schemas.Conversation: ...

    def update_status(self, conversation_id: str, status: str) -> schemas.Conversation: ...

    def fetch_for_inbox(
        self,
        tenant_id: UUID,
        *,
        status: Optional[str] = None,
        ai_workflow_state: Optional[str] = None,
        scan_limit: int,
    ) -> List[schemas.Conversation]: ...

    def atomic(self) -> AbstractContextManager: ...


class InMemoryConversationRepository:
    """Thread-safe in-process repository used by tests and local runs.

    Holds conversations for every tenant; tenant scoping is the caller's job,
    which is what the inbox engine and the authorizer re-check.
    """

    def __init__(self, tenant_id: Optional[UUID] = None) -> None:
        self.tenant_id = tenant_id or uuid4()
        self._lock = threading.Lock()
        self._conversations: Dict[str, schemas.Conversation] = {}
        self._messages: Dict[str, List[schemas.ConversationMessage]] = {}

    def create_conversation(
        self,
        visitor_id: Optional[str] = None,
        *,
        created_at: Optional[datetime] = None,
        tenant_id: Optional[UUID] = None,
        conversation_id: Optional[str] = None,
        last_message_at: Optional[datetime] = None,
    ) -> schemas.Conversation:
        now = created_at or _utcnow()
        conversation = schemas.Conversation(
            id=conversation_id or uuid4().hex,
            tenant_id=tenant_id or self.tenant_id,
            visitor_id=visitor_id,
            created_at=now,
            updated_at=now,
            last_message_at=last_message_at,
        )
        with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        return conversation

    def atomic(self) -> AbstractContextManager:
        return nullcontext()

    def save(self, conversation: schemas.Conversation) -> schemas.Conversation:
        """Store ``conversation`` as is (fixture helper)."""

        with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages.setdefault(conversation.id, [])
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def add_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_type: str,
        content: str,
    ) -> schemas.ConversationMessage:
        now = _utcnow()
        with self._lock:
            conversation = self._require(conversation_id)
            message = schemas.ConversationMessage(
                id=uuid4().hex,
                conversation_id=conversation_id,
                sender_id=sender_id,
                sender_type=sender_type,
                content=content,
                created_at=now,
            )
            self._messages[conversation_id].append(message)
            self._conversations[conversation_id] = conversation.model_copy(
                update={"last_message_at": now, "updated_at": now}
            )
        return message

    def list_messages(self, conversation_id: str) -> List[schemas.ConversationMessage]:
        with self._lock:
            return list(self._messages.get(conversation_id, []))

    def last_message(self, conversation_id: str) -> Optional[schemas.ConversationMessage]:
        with self._lock:
            messages = self._messages.get(conversation_id) or []
            return messages[-1] if messages else None

    def write_ai_workflow(
        self,
        conversation_id: str,
        patch: AIWorkflowPatch,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[schemas.Conversation]:
        with self._lock:
            conversation = self._require(conversation_id)
            if (
                expected_version is not None
                and conversation.ai_state_version != expected_version
            ):
                return None
            updated = apply_patch(conversation, patch, now=_utcnow())
            self._conversations[conversation_id] = updated
            return updated

    def reset_ai_workflow(self, conversation_id: str) -> schemas.Conversation:
        with self._lock:
            updated = reset_ai_workflow(self._require(conversation_id), now=_utcnow())
            self._conversations[conversation_id] = updated
            return updated

    def update_status(self, conversation_id: str, status: str) -> schemas.Conversation:
        with self._lock:
            updated = apply_status(self._require(conversation_id), status, now=_utcnow())
            self._conversations[conversation_id] = updated
            return updated

    def fetch_for_inbox(
        self,
        tenant_id: UUID,
        *,
        status: Optional[str] = None,
        ai_workflow_state: Optional[str] = None,
        scan_limit: int,
    ) -> List[schemas.Conversation]:
        with self._lock:
            rows = [
                c
                for c in self._conversations.values()
                if c.tenant_id == tenant_id
                and (status is None or c.status == status)
                and (ai_workflow_state is None or c.ai_workflow_state == ai_workflow_state)
            ]
        return sort_for_inbox(rows)[:scan_limit]

    def _require(self, conversation_id: str) -> schemas.Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ValueError(f"Conversation {conversation_id} not found")
        return conversation


_CONVERSATION_COLUMNS = """
    id, tenant_id, visitor_id, status, created_at, updated_at, last_message_at,
    resolved_at, ai_workflow_state, ai_handoff_reason, ai_last_confidence,
    ai_last_response_at, ai_state_version
"""


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`ConversationRepository`."""

    def __init__(self, conn: psycopg.Connection, tenant_id: Optional[UUID] = None) -> None:
        self._conn = conn
        self._tenant_id = get_required_tenant_id(tenant_id)

    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    @property
    def tenant_id(self) -> UUID:
        return self._tenant_id

    def atomic(self) -> AbstractContextManager:
        """Run a group of statements under a savepoint of the request transaction."""

        return self._conn.transaction()

    def create_conversation(
        self,
        visitor_id: Optional[str] = None,
        *,
        created_at: Optional[datetime] = None,
    ) -> schemas.Conversation:
        now = created_at or _utcnow()
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO conversations (id, tenant_id, visitor_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING {_CONVERSATION_COLUMNS}
                """,
                (uuid4().hex, self._tenant_id, visitor_id, now, now),
            )
            row = cur.fetchone()
        return schemas.Conversation(**row)

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE tenant_id = %s AND id = %s",
                (self._tenant_id, conversation_id),
            )
            row = cur.fetchone()
        return schemas.Conversation(**row) if row else None

    def add_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_type: str,
        content: str,
    ) -> schemas.ConversationMessage:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO conversation_messages
                    (id, tenant_id, conversation_id, sender_id, sender_type, content)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id, conversation_id, sender_id, sender_type, content, created_at
                """,
                (uuid4().hex, self._tenant_id, conversation_id, sender_id, sender_type, content),
            )
            row = cur.fetchone()
            cur.execute(
                """
                UPDATE conversations SET last_message_at = %s, updated_at = now()
                WHERE tenant_id = %s AND id = %s
                """,
                (row["created_at"], self._tenant_id, conversation_id),
            )
        return schemas.ConversationMessage(**row)

    def list_messages(self, conversation_id: str) -> List[schemas.ConversationMessage]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, conversation_id, sender_id, sender_type, content, created_at
                FROM conversation_messages
                WHERE tenant_id = %s AND conversation_id = %s
                ORDER BY created_at ASC
                """,
                (self._tenant_id, conversation_id),
            )
            rows = cur.fetchall()
        return [schemas.ConversationMessage(**row) for row in rows]

    def last_message(self, conversation_id: str) -> Optional[schemas.ConversationMessage]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, conversation_id, sender_id, sender_type, content, created_at
                FROM conversation_messages
                WHERE tenant_id = %s AND conversation_id = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (self._tenant_id, conversation_id),
            )
            row = cur.fetchone()
        return schemas.ConversationMessage(**row) if row else None

    def write_ai_workflow(
        self,
        conversation_id: str,
        patch: AIWorkflowPatch,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[schemas.Conversation]:
        # Validate the transition against the stored row before the CAS write.
        current = self.get_conversation(conversation_id)
        if current is None:
            raise ValueError(f"Conversation {conversation_id} not found")
        if expected_version is not None and current.ai_state_version != expected_version:
            return None
        updated = apply_patch(current, patch, now=_utcnow())
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE conversations
                SET ai_workflow_state = %s,
                    ai_handoff_reason = %s,
                    ai_last_confidence = %s,
                    ai_last_response_at = %s,
                    ai_state_version = ai_state_version + 1,
                    status = %s,
                    resolved_at = %s,
                    last_message_at = %s,
                    updated_at = now()
                WHERE tenant_id = %s AND id = %s AND ai_state_version = %s
                RETURNING {_CONVERSATION_COLUMNS}
                """,
                (
                    updated.ai_workflow_state,
                    updated.ai_handoff_reason,
                    updated.ai_last_confidence,
                    updated.ai_last_response_at,
                    updated.status,
                    updated.resolved_at,
                    updated.last_message_at,
                    self._tenant_id,
                    conversation_id,
                    current.ai_state_version,
                ),
            )
            row = cur.fetchone()
        return schemas.Conversation(**row) if row else None

    def reset_ai_workflow(self, conversation_id: str) -> schemas.Conversation:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE conversations
                SET ai_workflow_state = 'none',
                    ai_handoff_reason = NULL,
                    ai_state_version = ai_state_version + 1,
                    updated_at = now()
                WHERE tenant_id = %s AND id = %s
                RETURNING {_CONVERSATION_COLUMNS}
                """,
                (self._tenant_id, conversation_id),
            )
            row = cur.fetchone()
        if not row:
            raise ValueError(f"Conversation {conversation_id} not found")
        return schemas.Conversation(**row)

    def update_status(self, conversation_id: str, status: str) -> schemas.Conversation:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE conversations
                SET status = %s,
                    resolved_at = CASE
                        WHEN %s = 'closed' THEN now()
                        WHEN %s = 'open' THEN NULL
                        ELSE resolved_at
                    END,
                    updated_at = now()
                WHERE tenant_id = %s AND id = %s
                RETURNING {_CONVERSATION_COLUMNS}
                """,
                (status, status, status, self._tenant_id, conversation_id),
            )
            row = cur.fetchone()
        if not row:
            raise ValueError(f"Conversation {conversation_id} not found")
        return schemas.Conversation(**row)

    def fetch_for_inbox(
        self,
        tenant_id: UUID,
        *,
        status: Optional[str] = None,
        ai_workflow_state: Optional[str] = None,
        scan_limit: int,
    ) -> List[schemas.Conversation]:
        clauses: List[str] = ["tenant_id = %s"]
        params: List[Any] = [tenant_id]
        if ai_workflow_state:
            clauses.append("ai_workflow_state = %s")
            params.append(ai_workflow_state)
        if status:
            clauses.append("status = %s")
            params.append(status)
        params.append(scan_limit)
        query = (
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
            f"WHERE {' AND '.join(clauses)} "
            "ORDER BY COALESCE(last_message_at, created_at) DESC, id DESC "
            "LIMIT %s"
        )
        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [schemas.Conversation(**row) for row in rows]
