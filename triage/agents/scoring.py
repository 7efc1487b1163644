"""Confidence heuristic and handoff rules for automated answers.

The phrase tables and constants are part of the product behaviour; change
them only together with the support team's escalation guidelines.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .schemas import KnowledgeSnippet

BASE_CONFIDENCE = 0.5
RELEVANCE_SCALE = 20
MAX_RELEVANCE_BOOST = 0.3
UNCERTAINTY_PENALTY = 0.2

UNCERTAINTY_PHRASES = (
    "i don't know",
    "i'm not sure",
    "i cannot find",
    "i don't have enough information",
    "let me connect you",
    "human agent",
)

HUMAN_REQUEST_PHRASES = (
    "talk to human",
    "speak to agent",
    "real person",
    "human agent",
    "talk to someone",
    "speak to someone",
    "customer service",
    "representative",
)

SENSITIVE_TOPIC_PHRASES = (
    "billing",
    "refund",
    "cancel subscription",
    "delete account",
    "complaint",
    "legal",
    "lawsuit",
)

AI_HANDOFF_PHRASES = ("let me connect you", "human agent")

LOW_CONFIDENCE_REASON = "Low confidence response"
HUMAN_REQUESTED_REASON = "Customer requested human agent"
SENSITIVE_TOPIC_REASON = "Sensitive topic detected"
AI_INDICATED_REASON = "AI indicated handoff needed"


@dataclass(frozen=True)
class HandoffDecision:
    handoff: bool
    reason: str | None = None


def _contains_any(text: str, phrases: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in phrases)


def calculate_confidence(response: str, snippets: Sequence[KnowledgeSnippet]) -> float:
    confidence = BASE_CONFIDENCE
    if snippets:
        average = sum(s.relevance_score for s in snippets) / len(snippets)
        confidence += min(average / RELEVANCE_SCALE, MAX_RELEVANCE_BOOST)
    if _contains_any(response, UNCERTAINTY_PHRASES):
        confidence -= UNCERTAINTY_PENALTY
    return max(0.0, min(1.0, confidence))


def decide_handoff(
    response: str, confidence: float, threshold: float, query: str
) -> HandoffDecision:
    """Apply the handoff rules in priority order; the first match wins."""

    if confidence < threshold:
        return HandoffDecision(True, LOW_CONFIDENCE_REASON)
    if _contains_any(query, HUMAN_REQUEST_PHRASES):
        return HandoffDecision(True, HUMAN_REQUESTED_REASON)
    if _contains_any(query, SENSITIVE_TOPIC_PHRASES):
        return HandoffDecision(True, SENSITIVE_TOPIC_REASON)
    if _contains_any(response, AI_HANDOFF_PHRASES):
        return HandoffDecision(True, AI_INDICATED_REASON)
    return HandoffDecision(False)
