from __future__ import annotations

import os
from collections.abc import Mapping

from stageflow.backends.base import (
    AttemptResult,
    BackendCallError,
    BackendConfigError,
    BackendError,
    BackendExhaustedError,
    BackendTimeoutError,
    Candidate,
    CandidateError,
    GenerationBackend,
    GenerationRequest,
    ProviderName,
    parse_candidate,
    parse_candidates,
)
from stageflow.backends.claude import ClaudeBackend
from stageflow.backends.openai_compat import OpenAICompatibleBackend
from stageflow.backends.router import BackendRouter, CandidateAvailability
from stageflow.config import ProvidersConfig


def build_backends(
    providers: ProvidersConfig,
    environ: Mapping[str, str] | None = None,
    *,
    timeout_seconds: float | None = None,
) -> dict[ProviderName, GenerationBackend]:
    """Build the provider lookup table once, from credentials found in the environment.

    ``timeout_seconds`` bounds each HTTP request inside the SDK clients, so a call
    the router has abandoned still ends on its own.
    """
    env = os.environ if environ is None else environ
    return {
        "openai": OpenAICompatibleBackend(
            provider="openai",
            api_key=env.get(providers.openai_api_key_env),
            api_key_env=providers.openai_api_key_env,
            timeout_seconds=timeout_seconds,
        ),
        "kimi": OpenAICompatibleBackend(
            provider="kimi",
            api_key=env.get(providers.kimi_api_key_env),
            api_key_env=providers.kimi_api_key_env,
            base_url=providers.kimi_base_url,
            min_key_length=11,
            timeout_seconds=timeout_seconds,
        ),
        "openrouter": OpenAICompatibleBackend(
            provider="openrouter",
            api_key=env.get(providers.openrouter_api_key_env),
            api_key_env=providers.openrouter_api_key_env,
            base_url=providers.openrouter_base_url,
            min_key_length=21,
            timeout_seconds=timeout_seconds,
        ),
        "claude": ClaudeBackend(
            api_key=env.get(providers.anthropic_api_key_env),
            api_key_env=providers.anthropic_api_key_env,
            timeout_seconds=timeout_seconds,
        ),
    }


__all__ = [
    "AttemptResult",
    "BackendCallError",
    "BackendConfigError",
    "BackendError",
    "BackendExhaustedError",
    "BackendRouter",
    "BackendTimeoutError",
    "Candidate",
    "CandidateAvailability",
    "CandidateError",
    "ClaudeBackend",
    "GenerationBackend",
    "GenerationRequest",
    "OpenAICompatibleBackend",
    "ProviderName",
    "build_backends",
    "parse_candidate",
    "parse_candidates",
]
