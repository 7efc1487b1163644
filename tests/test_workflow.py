"""State machine tests for :mod:`triage.conversations.workflow`."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from triage.conversations.schemas import Conversation
from triage.conversations.workflow import (
    DEFAULT_HANDOFF_REASON,
    AIWorkflowPatch,
    WorkflowTransitionError,
    ai_handled,
    apply_patch,
    apply_status,
    handoff,
    reset_ai_workflow,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _conversation(**overrides):
    data = {"id": "c1", "tenant_id": uuid.uuid4(), "created_at": NOW - timedelta(days=1)}
    data.update(overrides)
    return Conversation(**data)


def test_new_conversation_starts_without_ai_state():
    conversation = _conversation()
    assert conversation.ai_workflow_state == "none"
    assert conversation.ai_handoff_reason is None
    assert conversation.ai_state_version == 0


def test_handoff_reason_must_track_state():
    with pytest.raises(ValidationError):
        _conversation(ai_workflow_state="handoff")
    with pytest.raises(ValidationError):
        _conversation(ai_workflow_state="ai_handled", ai_handoff_reason="why")


def test_ai_handled_from_none():
    conversation = _conversation()

    updated = apply_patch(conversation, ai_handled(conversation, 0.72, NOW), now=NOW)

    assert updated.ai_workflow_state == "ai_handled"
    assert updated.ai_handoff_reason is None
    assert updated.ai_last_confidence == 0.72
    assert updated.ai_last_response_at == NOW
    assert updated.ai_state_version == 1


def test_ai_handled_over_handoff_keeps_handoff():
    conversation = _conversation(ai_workflow_state="handoff", ai_handoff_reason="Billing")

    patch = ai_handled(conversation, 0.9, NOW)
    updated = apply_patch(conversation, patch, now=NOW)

    assert patch.state == "handoff"
    assert updated.ai_workflow_state == "handoff"
    assert updated.ai_handoff_reason == "Billing"
    assert updated.ai_last_confidence == 0.9


def test_handoff_reopens_closed_conversation():
    conversation = _conversation(status="closed", resolved_at=NOW - timedelta(hours=1))

    updated = apply_patch(conversation, handoff("Low confidence response", NOW), now=NOW)

    assert updated.ai_workflow_state == "handoff"
    assert updated.ai_handoff_reason == "Low confidence response"
    assert updated.status == "open"
    assert updated.resolved_at is None
    assert updated.last_message_at == NOW


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_blank_handoff_reason_gets_default(reason):
    assert handoff(reason, NOW).handoff_reason == DEFAULT_HANDOFF_REASON


def test_handoff_without_confidence_keeps_previous_value():
    conversation = _conversation(ai_last_confidence=0.4)
    updated = apply_patch(conversation, handoff("x", NOW), now=NOW)
    assert updated.ai_last_confidence == 0.4


def test_handoff_is_idempotent_on_state_but_bumps_version():
    conversation = _conversation(ai_workflow_state="handoff", ai_handoff_reason="first")

    updated = apply_patch(conversation, handoff("second", NOW), now=NOW)

    assert updated.ai_workflow_state == "handoff"
    assert updated.ai_handoff_reason == "second"
    assert updated.ai_state_version == 1


def test_automation_cannot_leave_handoff():
    conversation = _conversation(ai_workflow_state="handoff", ai_handoff_reason="x")
    patch = AIWorkflowPatch(state="ai_handled", handoff_reason=None, responded_at=NOW)

    with pytest.raises(WorkflowTransitionError):
        apply_patch(conversation, patch, now=NOW)


def test_unknown_state_is_rejected():
    patch = AIWorkflowPatch(state="escalated", handoff_reason=None, responded_at=NOW)
    with pytest.raises(WorkflowTransitionError):
        apply_patch(_conversation(), patch, now=NOW)


def test_human_release_resets_state():
    conversation = _conversation(
        ai_workflow_state="handoff", ai_handoff_reason="x", ai_state_version=3
    )

    updated = reset_ai_workflow(conversation, now=NOW)

    assert updated.ai_workflow_state == "none"
    assert updated.ai_handoff_reason is None
    assert updated.ai_state_version == 4


def test_status_changes_leave_ai_state_alone():
    conversation = _conversation(ai_workflow_state="handoff", ai_handoff_reason="x")

    closed = apply_status(conversation, "closed", now=NOW)
    reopened = apply_status(closed, "open", now=NOW)

    assert closed.resolved_at == NOW
    assert reopened.resolved_at is None
    assert reopened.ai_workflow_state == "handoff"
    assert reopened.ai_state_version == 0
