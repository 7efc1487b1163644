"""AI workflow state machine for conversations.

A conversation starts in ``none``. A delivered automated answer moves it to
``ai_handled``; any handoff (decision engine, disabled automation,
misconfiguration, generation failure) moves it to ``handoff``. Automation
never moves a conversation out of ``handoff``: only a human releasing the
conversation (``reset_ai_workflow``) does.

Functions here are pure. They compute an :class:`AIWorkflowPatch` which the
repository applies atomically against the ``ai_state_version`` the caller
observed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .schemas import AIWorkflowState, Conversation

AI_WORKFLOW_STATES: tuple[AIWorkflowState, ...] = ("none", "ai_handled", "handoff")
DEFAULT_HANDOFF_REASON = "Handoff requested"


class WorkflowTransitionError(ValueError):
    """Raised for a transition the state machine does not allow."""


@dataclass(frozen=True)
class AIWorkflowPatch:
    state: AIWorkflowState
    handoff_reason: str | None
    responded_at: datetime
    # ``None`` leaves the stored confidence untouched.
    confidence: float | None = None
    reopen: bool = False


def ai_handled(current: Conversation, confidence: float, at: datetime) -> AIWorkflowPatch:
    """Patch for an automated answer delivered without handoff.

    A conversation already handed off keeps its state and reason; only the
    confidence and response timestamp are refreshed.
    """

    if current.ai_workflow_state == "handoff":
        return AIWorkflowPatch(
            state="handoff",
            handoff_reason=current.ai_handoff_reason,
            responded_at=at,
            confidence=confidence,
        )
    return AIWorkflowPatch(
        state="ai_handled", handoff_reason=None, responded_at=at, confidence=confidence
    )


def handoff(
    reason: str | None, at: datetime, *, confidence: float | None = None
) -> AIWorkflowPatch:
    """Patch for a handoff; the conversation is reopened for human agents."""

    return AIWorkflowPatch(
        state="handoff",
        handoff_reason=(reason or "").strip() or DEFAULT_HANDOFF_REASON,
        responded_at=at,
        confidence=confidence,
        reopen=True,
    )


def apply_patch(
    conversation: Conversation, patch: AIWorkflowPatch, *, now: datetime
) -> Conversation:
    """Return ``conversation`` with ``patch`` applied and its version bumped."""

    if patch.state not in AI_WORKFLOW_STATES:
        raise WorkflowTransitionError(f"Unknown AI workflow state '{patch.state}'")
    if conversation.ai_workflow_state == "handoff" and patch.state != "handoff":
        raise WorkflowTransitionError(
            "Automation cannot move a conversation out of handoff"
        )
    update = {
        "ai_workflow_state": patch.state,
        "ai_handoff_reason": patch.handoff_reason,
        "ai_last_response_at": patch.responded_at,
        "ai_state_version": conversation.ai_state_version + 1,
        "updated_at": now,
    }
    if patch.confidence is not None:
        update["ai_last_confidence"] = patch.confidence
    if patch.reopen:
        update["status"] = "open"
        update["resolved_at"] = None
        update["last_message_at"] = now
    return Conversation.model_validate({**conversation.model_dump(), **update})


def reset_ai_workflow(conversation: Conversation, *, now: datetime) -> Conversation:
    """Human release: clear the AI state so automation may answer again."""

    return Conversation.model_validate(
        {
            **conversation.model_dump(),
            "ai_workflow_state": "none",
            "ai_handoff_reason": None,
            "ai_state_version": conversation.ai_state_version + 1,
            "updated_at": now,
        }
    )


def apply_status(
    conversation: Conversation, status: str, *, now: datetime
) -> Conversation:
    """Manual status change by an agent; AI state is left as is."""

    update: dict = {"status": status, "updated_at": now}
    if status == "closed":
        update["resolved_at"] = now
    elif status == "open":
        update["resolved_at"] = None
    return Conversation.model_validate({**conversation.model_dump(), **update})
