from __future__ import annotations

from typing import Any

from anthropic import AsyncAnthropic

from stageflow.backends.base import (
    BackendCallError,
    BackendConfigError,
    GenerationBackend,
)

ANTHROPIC_KEY_PREFIX = "sk-ant-"


class ClaudeBackend(GenerationBackend):
    """Messages API backend for Claude models."""

    provider = "claude"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_key_env: str = "ANTHROPIC_API_KEY",
        timeout_seconds: float | None = None,
        client: Any | None = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.api_key_env = api_key_env
        self.timeout_seconds = timeout_seconds
        self._client = client

    def configuration_error(self) -> str | None:
        if self._client is not None:
            return None
        if not self.api_key.startswith(ANTHROPIC_KEY_PREFIX):
            return f"{self.api_key_env} not configured"
        return None

    def _get_client(self) -> Any:
        if self._client is None:
            kwargs: dict[str, Any] = {"api_key": self.api_key, "max_retries": 0}
            if self.timeout_seconds:
                kwargs["timeout"] = self.timeout_seconds
            self._client = AsyncAnthropic(**kwargs)
        return self._client

    @staticmethod
    def _extract_text(response: Any) -> str:
        blocks = getattr(response, "content", None)
        if blocks is None and isinstance(response, dict):
            blocks = response.get("content")
        parts: list[str] = []
        for block in blocks or []:
            if isinstance(block, dict):
                block_type, text = block.get("type"), block.get("text")
            else:
                block_type, text = getattr(block, "type", None), getattr(block, "text", None)
            if block_type == "text" and isinstance(text, str):
                parts.append(text)
        return "\n".join(parts).strip()

    async def generate(
        self,
        model: str,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 8192,
    ) -> str:
        config_error = self.configuration_error()
        if config_error:
            raise BackendConfigError(config_error, provider=self.provider, model=model)

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": user}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self._get_client().messages.create(**kwargs)
        except Exception as exc:
            raise BackendCallError(
                f"Claude API error: {str(exc)[:200]}", provider=self.provider, model=model
            ) from exc

        text = self._extract_text(response)
        if not text:
            raise BackendCallError(
                "Empty response from Claude", provider=self.provider, model=model
            )
        return text
