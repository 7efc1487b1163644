"""Bounded-retry orchestration of text generation attempts.

A run ends in one of three terminal states:

``success``
    an attempt returned non-blank text.
``hard_failure``
    the generator raised. Provider and transport errors are never retried.
``exhausted``
    every allowed attempt returned blank text.

Each attempt leaves an :class:`AttemptTelemetry` entry. Operators only see the
serialized telemetry on failure paths, through the diagnostic record.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Protocol

from openai import OpenAI

from triage.errors import EmptyOutputError, GenerationError

from .prompts import build_retry_prompt
from .providers import ProviderRegistry
from .responses import GenerationPolicy
from .schemas import HistoryMessage

logger = logging.getLogger(__name__)

MAX_DIAGNOSTIC_METADATA_CHARS = 1800
MAX_TELEMETRY_WARNINGS = 3

OutcomeKind = Literal["success", "exhausted", "hard_failure"]


def _add(left: int | None, right: int | None) -> int | None:
    if left is None and right is None:
        return None
    return (left or 0) + (right or 0)


@dataclass(frozen=True)
class TokenUsage:
    total_tokens: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    reasoning_tokens: int | None = None

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            total_tokens=_add(self.total_tokens, other.total_tokens),
            input_tokens=_add(self.input_tokens, other.input_tokens),
            output_tokens=_add(self.output_tokens, other.output_tokens),
            reasoning_tokens=_add(self.reasoning_tokens, other.reasoning_tokens),
        )


@dataclass
class GenerationRequest:
    model: str
    system_prompt: str
    messages: list[dict[str, str]]
    max_output_tokens: int
    temperature: float


@dataclass
class GenerationResult:
    text: str | None
    finish_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    warnings: list[str] = field(default_factory=list)
    response_id: str | None = None
    response_model: str | None = None


class TextGenerator(Protocol):
    def generate(self, request: GenerationRequest) -> GenerationResult: ...


@dataclass
class AttemptTelemetry:
    attempt: int
    retry: bool
    output_length: int = 0
    finish_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    warnings: list[str] = field(default_factory=list)
    response_id: str | None = None
    response_model: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GenerationOutcome:
    kind: OutcomeKind
    text: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    attempts: list[AttemptTelemetry] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    def serialize_attempts(self) -> str:
        payload = json.dumps([a.as_dict() for a in self.attempts], default=str)
        return payload[:MAX_DIAGNOSTIC_METADATA_CHARS]

    def raise_for_failure(self) -> None:
        """Raise the taxonomy error matching a non-success outcome."""

        if self.kind == "hard_failure":
            message = str(self.error) if self.error else "Unknown generation error"
            raise GenerationError(
                message, attempt_metadata=self.serialize_attempts()
            ) from self.error
        if self.kind == "exhausted":
            raise EmptyOutputError(
                self.attempt_count, attempt_metadata=self.serialize_attempts()
            )


class GenerationOrchestrator:
    """Run generation attempts for one query under a :class:`GenerationPolicy`."""

    def __init__(
        self, generator: TextGenerator, policy: GenerationPolicy | None = None
    ) -> None:
        self._generator = generator
        self._policy = policy or GenerationPolicy()

    def run(
        self,
        model: str,
        system_prompt: str,
        history: Sequence[HistoryMessage],
        query: str,
    ) -> GenerationOutcome:
        messages = [{"role": m.role, "content": m.content} for m in history]
        messages.append({"role": "user", "content": query})

        attempts: list[AttemptTelemetry] = []
        usage = TokenUsage()
        for attempt in range(1, self._policy.max_attempts + 1):
            params = self._policy.parameters_for(attempt)
            request = GenerationRequest(
                model=model,
                system_prompt=(
                    build_retry_prompt(system_prompt) if params.retry else system_prompt
                ),
                messages=list(messages),
                max_output_tokens=params.max_output_tokens,
                temperature=params.temperature,
            )
            try:
                result = self._generator.generate(request)
            except Exception as exc:
                logger.warning("Generation attempt %d failed: %s", attempt, exc)
                attempts.append(
                    AttemptTelemetry(attempt=attempt, retry=params.retry, error=str(exc))
                )
                return GenerationOutcome(
                    kind="hard_failure", usage=usage, attempts=attempts, error=exc
                )

            text = (result.text or "").strip()
            usage = usage + result.usage
            attempts.append(
                AttemptTelemetry(
                    attempt=attempt,
                    retry=params.retry,
                    output_length=len(text),
                    finish_reason=result.finish_reason,
                    usage=result.usage,
                    warnings=list(result.warnings[:MAX_TELEMETRY_WARNINGS]),
                    response_id=result.response_id,
                    response_model=result.response_model,
                )
            )
            if text:
                return GenerationOutcome(
                    kind="success", text=text, usage=usage, attempts=attempts
                )
            logger.info(
                "Generation attempt %d returned empty text (finish_reason=%s)",
                attempt,
                result.finish_reason,
            )
        return GenerationOutcome(kind="exhausted", usage=usage, attempts=attempts)


class OpenAITextGenerator:
    """:class:`TextGenerator` backed by the OpenAI chat completions API."""

    def __init__(
        self, client: OpenAI | None = None, registry: ProviderRegistry | None = None
    ) -> None:
        self._client = client
        self._registry = registry or ProviderRegistry()

    def _get_client(self) -> OpenAI:
        if self._client is None:
            credentials = self._registry.get_credentials()
            if not credentials.api_key:
                raise RuntimeError("AI_GATEWAY_API_KEY environment variable is not set")
            self._client = OpenAI(
                api_key=credentials.api_key, base_url=credentials.base_url
            )
        return self._client

    def generate(self, request: GenerationRequest) -> GenerationResult:
        completion = self._get_client().chat.completions.create(
            model=request.model,
            messages=[
                {"role": "system", "content": request.system_prompt},
                *request.messages,
            ],
            max_completion_tokens=request.max_output_tokens,
            temperature=request.temperature,
        )
        choice = completion.choices[0] if completion.choices else None
        message = choice.message if choice else None
        warnings: list[str] = []
        if choice is not None and choice.finish_reason == "length":
            warnings.append("Output truncated at max_completion_tokens")
        refusal = getattr(message, "refusal", None)
        if refusal:
            warnings.append(f"Model refused: {refusal}")

        usage = TokenUsage()
        if completion.usage is not None:
            details = getattr(completion.usage, "completion_tokens_details", None)
            usage = TokenUsage(
                total_tokens=completion.usage.total_tokens,
                input_tokens=completion.usage.prompt_tokens,
                output_tokens=completion.usage.completion_tokens,
                reasoning_tokens=getattr(details, "reasoning_tokens", None),
            )
        return GenerationResult(
            text=message.content if message else None,
            finish_reason=choice.finish_reason if choice else None,
            usage=usage,
            warnings=warnings,
            response_id=completion.id,
            response_model=completion.model,
        )
