import json
import logging
import tempfile
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from triage.app_logging import init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("LOG_DIR", tmpdir)
        yield Path(tmpdir)


def test_timed_rotating_handler_configuration(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    monkeypatch.setenv("LOG_ROTATE_UTC", "true")
    app_logger = _clear_handlers("triage")
    access_logger = _clear_handlers("uvicorn.access")

    init_logging()

    for logger in (app_logger, access_logger):
        handler = next(
            h for h in logger.handlers if isinstance(h, TimedRotatingFileHandler)
        )
        assert handler.when == "MIDNIGHT"
        assert handler.backupCount == 5
        assert handler.utc is True

    app_logger.handlers.clear()
    access_logger.handlers.clear()


def test_log_files_and_redaction(log_dir, app_factory):
    _clear_handlers("triage")
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    app_logger = logging.getLogger("triage")
    app_logger.info("hello triage")

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            json={"token": "secret", "value": 1},
            headers={"Authorization": "Bearer secret", "X-Debug-Tenant": "t-1"},
        )
        assert resp.status_code == 200
        assert resp.headers["X-Request-Id"]

    for logger in (app_logger, logging.getLogger("uvicorn.access")):
        for handler in logger.handlers:
            handler.flush()

    app_log = log_dir / "triage.log"
    access_log = log_dir / "access.log"

    assert "hello triage" in app_log.read_text()
    assert "[tenant=-]" in app_log.read_text()

    access_line = access_log.read_text().splitlines()[-1]
    payload = access_line.split(": ", 1)[1]
    data = json.loads(payload)
    assert data["path"] == "/echo"
    assert data["headers"]["authorization"] == "***"
    assert data["headers"]["x-debug-tenant"] == "***"
    assert data["body"]["token"] == "***"
    assert data["body"]["value"] == 1

    app_logger.handlers.clear()
    logging.getLogger("uvicorn.access").handlers.clear()
