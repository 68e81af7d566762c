from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal, get_args

ProviderName = Literal["openai", "kimi", "openrouter", "claude"]
PROVIDER_NAMES: tuple[str, ...] = get_args(ProviderName)
DEFAULT_PROVIDER: ProviderName = "openai"

SECRET_PATTERN = re.compile(r"sk-(?:ant-|or-)?[A-Za-z0-9_-]{16,}")


def redact_secrets(message: str) -> str:
    return SECRET_PATTERN.sub("[REDACTED]", message)


class BackendError(RuntimeError):
    """Base class for generation backend failures."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        model: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(redact_secrets(message))
        self.provider = provider
        self.model = model
        self.retriable = retriable


class BackendConfigError(BackendError):
    """Raised when a provider lacks the credentials it needs."""

    def __init__(self, message: str, *, provider: str | None = None, model: str | None = None):
        super().__init__(message, provider=provider, model=model, retriable=False)


class BackendTimeoutError(BackendError):
    """Raised when a generation attempt exceeds its time budget."""


class BackendCallError(BackendError):
    """Raised when a provider call fails or returns unusable content."""


class CandidateError(ValueError):
    """Raised when a model reference cannot be turned into a candidate."""


@dataclass(frozen=True, slots=True)
class Candidate:
    provider: str
    model: str

    @property
    def ref(self) -> str:
        return f"{self.provider}/{self.model}"

    def __str__(self) -> str:
        return self.ref


def parse_candidate(ref: str) -> Candidate:
    """Parse ``provider/model``; a bare model name belongs to the default provider."""
    text = str(ref).strip()
    if not text:
        raise CandidateError("Empty model reference.")
    provider, sep, model = text.partition("/")
    if not sep:
        provider, model = DEFAULT_PROVIDER, text
    provider = provider.strip().lower()
    model = model.strip()
    if provider not in PROVIDER_NAMES:
        raise CandidateError(f"Invalid provider '{provider}' in model ref '{text}'.")
    if not model:
        raise CandidateError(f"Invalid model reference format: '{text}'.")
    return Candidate(provider=provider, model=model)


def parse_candidates(refs: Iterable[str]) -> list[Candidate]:
    candidates = [parse_candidate(ref) for ref in refs]
    if not candidates:
        raise CandidateError("Candidate list must contain a primary model.")
    return candidates


class GenerationBackend(ABC):
    provider: str = "backend"

    @abstractmethod
    def configuration_error(self) -> str | None:
        """Return why the provider cannot be called, or ``None`` when it is ready."""

    def is_configured(self) -> bool:
        return self.configuration_error() is None

    @abstractmethod
    async def generate(
        self,
        model: str,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> str:
        """Run one completion and return its text."""


@dataclass(slots=True)
class GenerationRequest:
    system: str
    user: str
    temperature: float = 0.3
    max_tokens: int = 4000


@dataclass(slots=True)
class AttemptResult:
    candidate: Candidate
    success: bool
    error: str | None = None
    kind: Literal["configuration", "timeout", "call"] | None = None
    elapsed_seconds: float = 0.0

    def describe(self) -> str:
        if self.success:
            return f"{self.candidate.ref}: ok"
        return f"{self.candidate.ref}: {self.error}"


class BackendExhaustedError(BackendError):
    """Raised when every candidate for a request has failed."""

    def __init__(self, attempts: list[AttemptResult]) -> None:
        self.attempts = list(attempts)
        failures = "\n".join(f"  - {attempt.describe()}" for attempt in self.attempts)
        super().__init__(
            f"All candidates failed to generate a response. Attempted:\n{failures}",
            retriable=False,
        )
