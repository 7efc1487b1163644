"""Database helpers for tenant-aware psycopg connections."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from uuid import UUID

import psycopg

from .tenant_context import get_current_tenant_id

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "schema.sql"


def connect(dsn: str | None = None) -> psycopg.Connection:
    """Open a connection to ``dsn`` or ``DATABASE_URL``."""

    dsn = dsn or os.getenv("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL not configured")
    return psycopg.connect(dsn)


def apply_tenant_settings(
    conn: psycopg.Connection, tenant_id: str | UUID | None = None
) -> None:
    """Set ``app.tenant_id`` on ``conn`` so row level security policies apply.

    The setting is session scoped so it survives the commits issued by the
    repositories within one request.
    """

    effective = tenant_id or get_current_tenant_id()
    if not effective:
        raise RuntimeError("tenant_id is required for tenant-scoped operations")
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT set_config('app.tenant_id', %s, false)", (str(effective),)
            )
    except Exception:  # pragma: no cover - defensive logging
        logger.exception("Failed to apply tenant settings to connection")
        raise


def get_required_tenant_id(tenant_id: str | UUID | None = None) -> UUID:
    """Return the tenant for the current operation or raise ``RuntimeError``."""

    effective = tenant_id or get_current_tenant_id()
    if effective is None:
        raise RuntimeError("Tenant context missing")
    if isinstance(effective, UUID):
        return effective
    try:
        return UUID(str(effective))
    except ValueError as exc:
        raise RuntimeError("Invalid tenant identifier") from exc


def ensure_schema(
    conn: psycopg.Connection, schema_sql_path: Path | None = None
) -> None:
    """Apply the idempotent DDL in ``schema.sql``."""

    sql = (schema_sql_path or SCHEMA_PATH).read_text(encoding="utf-8")
    with conn.cursor() as cur:
        cur.execute(sql)
    conn.commit()
