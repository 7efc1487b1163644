"""Error taxonomy shared by the triage pipeline and its collaborators.

Only :class:`PreconditionError` is allowed to escape the pipeline. Every
other error is converted into a handoff (or apology) message plus a
diagnostic record for operators.
"""

from __future__ import annotations


class TriageError(RuntimeError):
    """Base class for triage failures."""


class PreconditionError(TriageError):
    """The conversation is missing or does not belong to the caller's tenant."""


class ConversationNotFoundError(PreconditionError):
    """No conversation exists with the requested id."""


class TenantMismatchError(PreconditionError):
    """The conversation belongs to another tenant."""


class ConfigurationError(TriageError):
    """The tenant's model configuration cannot be used."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider = provider
        self.model = model


class GenerationError(TriageError):
    """The text generation provider raised instead of returning output."""

    def __init__(self, message: str, *, attempt_metadata: str | None = None) -> None:
        super().__init__(message)
        self.attempt_metadata = attempt_metadata


class EmptyOutputError(TriageError):
    """Every generation attempt returned blank text."""

    def __init__(self, attempts: int, *, attempt_metadata: str) -> None:
        super().__init__(f"AI returned an empty response after {attempts} attempt(s)")
        self.attempts = attempts
        self.attempt_metadata = attempt_metadata


class DeliveryError(TriageError):
    """A handoff notice could not be written to the conversation."""
