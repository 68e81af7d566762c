from __future__ import annotations

from typing import Any

from openai import AsyncOpenAI

from stageflow.backends.base import (
    BackendCallError,
    BackendConfigError,
    GenerationBackend,
)


class OpenAICompatibleBackend(GenerationBackend):
    """Chat-completions backend for OpenAI and OpenAI-compatible providers."""

    def __init__(
        self,
        *,
        provider: str = "openai",
        api_key: str | None = None,
        api_key_env: str = "OPENAI_API_KEY",
        base_url: str | None = None,
        min_key_length: int = 1,
        timeout_seconds: float | None = None,
        client: Any | None = None,
    ) -> None:
        self.provider = provider
        self.api_key = (api_key or "").strip()
        self.api_key_env = api_key_env
        self.base_url = base_url
        self.min_key_length = min_key_length
        self.timeout_seconds = timeout_seconds
        self._client = client

    def configuration_error(self) -> str | None:
        if self._client is not None:
            return None
        if len(self.api_key) < max(1, self.min_key_length):
            return f"{self.api_key_env} not configured"
        return None

    def _get_client(self) -> Any:
        if self._client is None:
            # One HTTP attempt per call; the router owns fallback.
            kwargs: dict[str, Any] = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            if self.timeout_seconds:
                kwargs["timeout"] = self.timeout_seconds
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        if isinstance(payload, dict):
            choices = payload.get("choices") or []
            if choices and isinstance(choices[0], dict):
                message = choices[0].get("message") or {}
                content = message.get("content") if isinstance(message, dict) else None
                return content if isinstance(content, str) else ""
            return ""
        choices = getattr(payload, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else ""

    async def generate(
        self,
        model: str,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> str:
        config_error = self.configuration_error()
        if config_error:
            raise BackendConfigError(config_error, provider=self.provider, model=model)
        try:
            payload = await self._get_client().chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as exc:
            raise BackendCallError(
                f"{self.provider} request failed: {exc}",
                provider=self.provider,
                model=model,
            ) from exc

        content = self._extract_text(payload).strip()
        if not content:
            raise BackendCallError(
                f"Empty response from {self.provider}", provider=self.provider, model=model
            )
        return content
