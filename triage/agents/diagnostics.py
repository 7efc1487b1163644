"""Per-tenant "last configuration/generation error" slot.

Each tenant has at most one diagnostic. A new failure overwrites it and a
successful configuration check clears it; nothing is merged or appended.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol
from uuid import UUID

import psycopg
from psycopg.rows import dict_row

from .schemas import Diagnostic

logger = logging.getLogger(__name__)


class DiagnosticStore(Protocol):
    def put(self, tenant_id: UUID, diagnostic: Diagnostic) -> None: ...

    def delete(self, tenant_id: UUID) -> None: ...

    def get(self, tenant_id: UUID) -> Optional[Diagnostic]: ...


class InMemoryDiagnosticStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: Dict[UUID, Diagnostic] = {}

    def put(self, tenant_id: UUID, diagnostic: Diagnostic) -> None:
        with self._lock:
            self._slots[tenant_id] = diagnostic

    def delete(self, tenant_id: UUID) -> None:
        with self._lock:
            self._slots.pop(tenant_id, None)

    def get(self, tenant_id: UUID) -> Optional[Diagnostic]:
        with self._lock:
            return self._slots.get(tenant_id)


class PostgresDiagnosticStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def put(self, tenant_id: UUID, diagnostic: Diagnostic) -> None:
        with self._conn.transaction(), self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO ai_diagnostics (tenant_id, code, message, provider, model, detected_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id) DO UPDATE
                SET code = EXCLUDED.code,
                    message = EXCLUDED.message,
                    provider = EXCLUDED.provider,
                    model = EXCLUDED.model,
                    detected_at = EXCLUDED.detected_at
                """,
                (
                    tenant_id,
                    diagnostic.code,
                    diagnostic.message,
                    diagnostic.provider,
                    diagnostic.model,
                    diagnostic.detected_at,
                ),
            )

    def delete(self, tenant_id: UUID) -> None:
        with self._conn.transaction(), self._conn.cursor() as cur:
            cur.execute("DELETE FROM ai_diagnostics WHERE tenant_id = %s", (tenant_id,))

    def get(self, tenant_id: UUID) -> Optional[Diagnostic]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT code, message, provider, model, detected_at
                FROM ai_diagnostics WHERE tenant_id = %s
                """,
                (tenant_id,),
            )
            row = cur.fetchone()
        return Diagnostic(**row) if row else None


class DiagnosticRecorder:
    """Write operator-facing diagnostics for a tenant."""

    def __init__(self, store: DiagnosticStore) -> None:
        self._store = store

    def record(
        self,
        tenant_id: UUID,
        code: str,
        message: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Diagnostic:
        diagnostic = Diagnostic(
            code=code,
            message=message,
            provider=provider,
            model=model,
            detected_at=datetime.now(timezone.utc),
        )
        self._store.put(tenant_id, diagnostic)
        logger.warning("Recorded AI diagnostic %s for tenant %s: %s", code, tenant_id, message)
        return diagnostic

    def clear(self, tenant_id: UUID) -> None:
        self._store.delete(tenant_id)

    def get(self, tenant_id: UUID) -> Optional[Diagnostic]:
        return self._store.get(tenant_id)
