"""Sampling parameters for generation attempts."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class AttemptParameters:
    temperature: float
    max_output_tokens: int
    retry: bool


@dataclass(frozen=True)
class GenerationPolicy:
    """How many attempts to make and with which sampling settings.

    The first attempt samples at ``initial_temperature``; retries after an
    empty reply drop to ``retry_temperature`` to push the model toward a
    plain, deterministic answer.
    """

    max_retries: int = 1
    initial_temperature: float = 0.7
    retry_temperature: float = 0.2
    max_output_tokens: int = 1000

    @classmethod
    def from_env(cls) -> "GenerationPolicy":
        return cls(
            max_retries=max(int(os.getenv("TRIAGE_MAX_RETRIES", "1")), 0),
            max_output_tokens=int(os.getenv("TRIAGE_MAX_OUTPUT_TOKENS", "1000")),
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def parameters_for(self, attempt: int) -> AttemptParameters:
        """Parameters for the 1-based ``attempt``."""

        if attempt < 1 or attempt > self.max_attempts:
            raise ValueError(f"Attempt {attempt} outside 1..{self.max_attempts}")
        retry = attempt > 1
        return AttemptParameters(
            temperature=self.retry_temperature if retry else self.initial_temperature,
            max_output_tokens=self.max_output_tokens,
            retry=retry,
        )
