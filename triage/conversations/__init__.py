"""Conversation persistence, AI workflow state and the agent inbox."""

from . import schemas
from .models import HandoffResult
from .service import ConversationService

__all__ = [
    "ConversationService",
    "HandoffResult",
    "schemas",
]
