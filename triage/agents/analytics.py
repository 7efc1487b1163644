"""Append-only log of automated answers and the metrics derived from it."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol
from uuid import UUID

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..core.db import apply_tenant_settings
from . import schemas

_RESPONSE_COLUMNS = """
    id, tenant_id, conversation_id, message_id, query, response, sources,
    confidence, handed_off, handoff_reason, generation_time_ms, tokens_used,
    model, provider, feedback, created_at
"""


class ResponseNotFoundError(RuntimeError):
    """Raised when feedback targets an unknown response record."""


class ResponseSink(Protocol):
    def append(self, record: schemas.AIResponseRecord) -> None: ...


class ResponseAnalyticsStore(ResponseSink, Protocol):
    def list_responses(
        self,
        tenant_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[schemas.AIResponseRecord]: ...

    def get_response(
        self, tenant_id: UUID, response_id: str
    ) -> Optional[schemas.AIResponseRecord]: ...

    def set_feedback(
        self, tenant_id: UUID, response_id: str, feedback: str
    ) -> schemas.AIResponseRecord: ...


def _in_range(
    record: schemas.AIResponseRecord, start: Optional[datetime], end: Optional[datetime]
) -> bool:
    if start is not None and record.created_at < start:
        return False
    if end is not None and record.created_at > end:
        return False
    return True


class InMemoryResponseAnalyticsStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, schemas.AIResponseRecord] = {}

    def append(self, record: schemas.AIResponseRecord) -> None:
        with self._lock:
            # Re-delivery of the same record is a no-op.
            self._records.setdefault(record.id, record)

    def list_responses(
        self,
        tenant_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[schemas.AIResponseRecord]:
        with self._lock:
            records = list(self._records.values())
        return [
            r for r in records if r.tenant_id == tenant_id and _in_range(r, start, end)
        ]

    def get_response(
        self, tenant_id: UUID, response_id: str
    ) -> Optional[schemas.AIResponseRecord]:
        with self._lock:
            record = self._records.get(response_id)
        if record is None or record.tenant_id != tenant_id:
            return None
        return record

    def set_feedback(
        self, tenant_id: UUID, response_id: str, feedback: str
    ) -> schemas.AIResponseRecord:
        with self._lock:
            record = self._records.get(response_id)
            if record is None or record.tenant_id != tenant_id:
                raise ResponseNotFoundError(f"AI response {response_id} not found")
            updated = record.model_copy(update={"feedback": feedback})
            self._records[response_id] = updated
        return updated


class PostgresResponseAnalyticsStore:
    def __init__(self, connection: psycopg.Connection):
        self._conn = connection

    def cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def append(self, record: schemas.AIResponseRecord) -> None:
        with self._conn.transaction(), self.cursor() as cur:
            cur.execute(
                """
                INSERT INTO ai_responses (
                    id, tenant_id, conversation_id, message_id, query, response,
                    sources, confidence, handed_off, handoff_reason,
                    generation_time_ms, tokens_used, model, provider, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    record.id,
                    record.tenant_id,
                    record.conversation_id,
                    record.message_id,
                    record.query,
                    record.response,
                    Jsonb([s.model_dump() for s in record.sources]),
                    record.confidence,
                    record.handed_off,
                    record.handoff_reason,
                    record.generation_time_ms,
                    record.tokens_used,
                    record.model,
                    record.provider,
                    record.created_at,
                ),
            )

    def list_responses(
        self,
        tenant_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[schemas.AIResponseRecord]:
        clauses = ["tenant_id = %s"]
        params: list = [tenant_id]
        if start is not None:
            clauses.append("created_at >= %s")
            params.append(start)
        if end is not None:
            clauses.append("created_at <= %s")
            params.append(end)
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {_RESPONSE_COLUMNS} FROM ai_responses "
                f"WHERE {' AND '.join(clauses)} ORDER BY created_at ASC",
                params,
            )
            rows = cur.fetchall()
        return [schemas.AIResponseRecord(**row) for row in rows]

    def get_response(
        self, tenant_id: UUID, response_id: str
    ) -> Optional[schemas.AIResponseRecord]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {_RESPONSE_COLUMNS} FROM ai_responses WHERE tenant_id = %s AND id = %s",
                (tenant_id, response_id),
            )
            row = cur.fetchone()
        return schemas.AIResponseRecord(**row) if row else None

    def set_feedback(
        self, tenant_id: UUID, response_id: str, feedback: str
    ) -> schemas.AIResponseRecord:
        with self.cursor() as cur:
            cur.execute(
                f"""
                UPDATE ai_responses SET feedback = %s
                WHERE tenant_id = %s AND id = %s
                RETURNING {_RESPONSE_COLUMNS}
                """,
                (feedback, tenant_id, response_id),
            )
            row = cur.fetchone()
        if not row:
            raise ResponseNotFoundError(f"AI response {response_id} not found")
        return schemas.AIResponseRecord(**row)


class DetachedPostgresResponseSink:
    """Append records on a short-lived connection of their own.

    Used for writes handed to the side-effect runner, which may run after the
    request connection is closed.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn

    def append(self, record: schemas.AIResponseRecord) -> None:
        with psycopg.connect(self._dsn) as conn:
            apply_tenant_settings(conn, record.tenant_id)
            PostgresResponseAnalyticsStore(conn).append(record)


def summarize_responses(
    records: List[schemas.AIResponseRecord],
) -> schemas.AnalyticsSummary:
    """Aggregate response records; rates are fractions in ``[0, 1]``."""

    total = len(records)
    handed_off = sum(1 for r in records if r.handed_off)
    resolved = total - handed_off
    helpful = sum(1 for r in records if r.feedback == "helpful")
    not_helpful = sum(1 for r in records if r.feedback == "not_helpful")
    rated = helpful + not_helpful

    return schemas.AnalyticsSummary(
        total_responses=total,
        resolved_by_ai=resolved,
        handed_off=handed_off,
        handoff_rate=handed_off / total if total else 0.0,
        resolution_rate=resolved / total if total else 0.0,
        helpful_feedback=helpful,
        not_helpful_feedback=not_helpful,
        satisfaction_rate=helpful / rated if rated else 0.0,
        avg_response_time_ms=(
            sum(r.generation_time_ms for r in records) / total if total else 0.0
        ),
        avg_confidence=sum(r.confidence for r in records) / total if total else 0.0,
    )
