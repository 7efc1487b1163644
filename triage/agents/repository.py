"""Persistence for per-tenant AI agent settings."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol
from uuid import UUID

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from . import schemas

_SETTINGS_COLUMNS = """
    tenant_id, enabled, knowledge_sources, confidence_threshold, personality,
    handoff_message, working_hours, model, suggestions_enabled, embedding_model,
    updated_at
"""

# Optional fields an explicit null resets.
CLEARABLE_SETTINGS = frozenset({"personality", "working_hours"})


class AgentSettingsRepository(Protocol):
    """Persistence abstraction for :class:`schemas.AgentSettings`."""

    def get_settings(self, tenant_id: UUID) -> schemas.AgentSettings: ...

    def upsert_settings(
        self, tenant_id: UUID, payload: schemas.AgentSettingsUpdate
    ) -> schemas.AgentSettings: ...


def _merge(
    current: schemas.AgentSettings, payload: schemas.AgentSettingsUpdate
) -> schemas.AgentSettings:
    changes = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key in CLEARABLE_SETTINGS
    }
    data = {**current.model_dump(), **changes, "updated_at": datetime.now(timezone.utc)}
    return schemas.AgentSettings.model_validate(data)


class InMemoryAgentSettingsRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._settings: Dict[UUID, schemas.AgentSettings] = {}

    def get_settings(self, tenant_id: UUID) -> schemas.AgentSettings:
        with self._lock:
            stored = self._settings.get(tenant_id)
        return stored or schemas.AgentSettings(tenant_id=tenant_id)

    def upsert_settings(
        self, tenant_id: UUID, payload: schemas.AgentSettingsUpdate
    ) -> schemas.AgentSettings:
        with self._lock:
            current = self._settings.get(tenant_id) or schemas.AgentSettings(
                tenant_id=tenant_id
            )
            updated = _merge(current, payload)
            self._settings[tenant_id] = updated
        return updated


class PostgresAgentSettingsRepository:
    """PostgreSQL-backed settings repository (one row per tenant)."""

    def __init__(self, connection: psycopg.Connection):
        self._conn = connection

    def cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def _fetch(self, tenant_id: UUID) -> Optional[schemas.AgentSettings]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {_SETTINGS_COLUMNS} FROM ai_agent_settings WHERE tenant_id = %s",
                (tenant_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        if row.get("handoff_message") is None:
            row["handoff_message"] = schemas.DEFAULT_HANDOFF_MESSAGE
        return schemas.AgentSettings(**row)

    def get_settings(self, tenant_id: UUID) -> schemas.AgentSettings:
        return self._fetch(tenant_id) or schemas.AgentSettings(tenant_id=tenant_id)

    def upsert_settings(
        self, tenant_id: UUID, payload: schemas.AgentSettingsUpdate
    ) -> schemas.AgentSettings:
        merged = _merge(self.get_settings(tenant_id), payload)
        working_hours = merged.working_hours.model_dump() if merged.working_hours else None
        with self.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO ai_agent_settings (
                    tenant_id, enabled, knowledge_sources, confidence_threshold,
                    personality, handoff_message, working_hours, model,
                    suggestions_enabled, embedding_model, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id) DO UPDATE
                SET enabled = EXCLUDED.enabled,
                    knowledge_sources = EXCLUDED.knowledge_sources,
                    confidence_threshold = EXCLUDED.confidence_threshold,
                    personality = EXCLUDED.personality,
                    handoff_message = EXCLUDED.handoff_message,
                    working_hours = EXCLUDED.working_hours,
                    model = EXCLUDED.model,
                    suggestions_enabled = EXCLUDED.suggestions_enabled,
                    embedding_model = EXCLUDED.embedding_model,
                    updated_at = EXCLUDED.updated_at
                RETURNING {_SETTINGS_COLUMNS}
                """,
                (
                    tenant_id,
                    merged.enabled,
                    Jsonb(list(merged.knowledge_sources)),
                    merged.confidence_threshold,
                    merged.personality,
                    merged.handoff_message,
                    Jsonb(working_hours) if working_hours else None,
                    merged.model,
                    merged.suggestions_enabled,
                    merged.embedding_model,
                    merged.updated_at,
                ),
            )
            row = cur.fetchone()
        return schemas.AgentSettings(**row)
