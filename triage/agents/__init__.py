"""AI agent triage: configuration, generation, scoring and settings."""

from . import schemas
from .service import AgentSettingsService, TriagePipeline

__all__ = [
    "AgentSettingsService",
    "TriagePipeline",
    "schemas",
]
