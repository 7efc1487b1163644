"""Tests for tenant-aware database helpers."""

from pathlib import Path
from uuid import uuid4

import pytest

from triage.core.db import (
    SCHEMA_PATH,
    apply_tenant_settings,
    connect,
    ensure_schema,
    get_required_tenant_id,
)
from triage.core.tenant_context import reset_tenant_context, set_tenant_context


class RecordingConnection:
    def __init__(self):
        self.statements = []
        self.commits = 0

    def cursor(self):
        return RecordingCursor(self)

    def commit(self):
        self.commits += 1


class RecordingCursor:
    def __init__(self, conn):
        self._conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self._conn.statements.append((sql, params))


def test_get_required_tenant_id_from_context():
    tenant = uuid4()
    token = set_tenant_context(str(tenant), "agent-123")
    try:
        assert get_required_tenant_id() == tenant
    finally:
        reset_tenant_context(token)


def test_get_required_tenant_id_invalid_raises():
    with pytest.raises(RuntimeError):
        get_required_tenant_id()

    with pytest.raises(RuntimeError):
        get_required_tenant_id("not-a-uuid")


def test_apply_tenant_settings_sets_session_variable():
    conn = RecordingConnection()
    tenant = uuid4()

    apply_tenant_settings(conn, tenant)

    [(sql, params)] = conn.statements
    assert "set_config('app.tenant_id'" in sql
    assert params == (str(tenant),)


def test_apply_tenant_settings_requires_tenant():
    with pytest.raises(RuntimeError):
        apply_tenant_settings(RecordingConnection())


def test_ensure_schema_runs_bundled_ddl():
    conn = RecordingConnection()

    ensure_schema(conn)

    [(sql, _)] = conn.statements
    assert "CREATE TABLE IF NOT EXISTS conversations" in sql
    assert "ai_state_version" in sql
    assert conn.commits == 1
    assert Path(SCHEMA_PATH).name == "schema.sql"


def test_connect_requires_dsn(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        connect()
