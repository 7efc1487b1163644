"""Model configuration checks and provider credential lookup."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from .schemas import Diagnostic, ModelOption

SUPPORTED_PROVIDERS = frozenset({"openai"})

MISSING_MODEL = "MISSING_MODEL"
INVALID_MODEL_FORMAT = "INVALID_MODEL_FORMAT"
UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
MISSING_PROVIDER_CREDENTIALS = "MISSING_PROVIDER_CREDENTIALS"
GENERATION_FAILED = "GENERATION_FAILED"
EMPTY_GENERATION_RESPONSE = "EMPTY_GENERATION_RESPONSE"

AVAILABLE_MODELS: tuple[ModelOption, ...] = (
    ModelOption(id="openai/gpt-5-nano", name="GPT-5.1 Mini", provider="openai"),
    ModelOption(id="openai/gpt-5.1", name="GPT-5.1", provider="openai"),
    ModelOption(
        id="anthropic/claude-3-haiku-20240307", name="Claude 3 Haiku", provider="anthropic"
    ),
    ModelOption(
        id="anthropic/claude-3-5-sonnet-20241022",
        name="Claude 3.5 Sonnet",
        provider="anthropic",
    ),
)


def parse_model(model: str) -> tuple[str, str]:
    """Split ``provider/model``; a bare model name is assumed to be OpenAI's."""

    parts = model.strip().split("/")
    if len(parts) == 2:
        return parts[0], parts[1]
    return "openai", model.strip()


def validate_model_configuration(
    model: str | None, *, credentials_present: bool
) -> Diagnostic | None:
    """Return the first configuration problem for ``model`` or ``None``."""

    trimmed = (model or "").strip()
    if not trimmed:
        return Diagnostic(
            code=MISSING_MODEL,
            message="AI model is not configured. Update AI Agent settings.",
        )

    parts = trimmed.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return Diagnostic(
            code=INVALID_MODEL_FORMAT,
            message=(
                "AI model format is invalid. Use provider/model "
                "(for example openai/gpt-5-nano)."
            ),
            model=trimmed,
        )

    provider = parts[0]
    if provider not in SUPPORTED_PROVIDERS:
        return Diagnostic(
            code=UNSUPPORTED_PROVIDER,
            message=f"Provider '{provider}' is not supported in this runtime.",
            provider=provider,
            model=trimmed,
        )

    if not credentials_present:
        return Diagnostic(
            code=MISSING_PROVIDER_CREDENTIALS,
            message="AI provider credentials are missing. Set AI_GATEWAY_API_KEY.",
            provider=provider,
            model=trimmed,
        )
    return None


@dataclass(frozen=True)
class ProviderCredentials:
    api_key: str | None
    base_url: str | None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


class ProviderRegistry:
    """Resolve gateway credentials from the environment or explicit overrides.

    All supported providers are reached through one OpenAI-compatible gateway,
    so a single key covers them. Keys issued by the Vercel gateway (``vck_``
    prefix) default to its endpoint; anything else talks to OpenAI directly.
    """

    API_KEY_ENV = "AI_GATEWAY_API_KEY"
    BASE_URL_ENV = "AI_GATEWAY_BASE_URL"

    def __init__(self, overrides: Mapping[str, str | None] | None = None):
        self._overrides = dict(overrides or {})

    def get_credentials(self) -> ProviderCredentials:
        if "api_key" in self._overrides:
            api_key = self._overrides.get("api_key")
        else:
            api_key = os.getenv(self.API_KEY_ENV)
        base_url = self._overrides.get("base_url") or os.getenv(self.BASE_URL_ENV)
        if api_key and not base_url:
            base_url = (
                "https://ai-gateway.vercel.sh/v1"
                if api_key.startswith("vck_")
                else "https://api.openai.com/v1"
            )
        return ProviderCredentials(api_key=api_key or None, base_url=base_url)

    def credentials_present(self) -> bool:
        return self.get_credentials().configured
