from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from stageflow.backends.base import (
    AttemptResult,
    BackendExhaustedError,
    BackendTimeoutError,
    Candidate,
    GenerationBackend,
    GenerationRequest,
    parse_candidate,
    redact_secrets,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]
DEFAULT_TIMEOUT_SECONDS = 120.0


@dataclass(slots=True)
class CandidateAvailability:
    available: list[Candidate] = field(default_factory=list)
    unavailable: list[Candidate] = field(default_factory=list)


class BackendRouter:
    """Tries ranked candidates in order and returns the first successful generation.

    Each attempt races the provider call against ``timeout_seconds``. A call
    that loses the race is not cancelled: the router stops waiting, keeps a
    reference to the task and discards whatever it eventually produces.
    ``aclose()`` cancels abandoned calls that are still running.
    """

    def __init__(
        self,
        backends: Mapping[str, GenerationBackend],
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.backends = dict(backends)
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook
        self._abandoned: set[asyncio.Future[str]] = set()

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _normalize(candidates: Iterable[Candidate | str]) -> list[Candidate]:
        return [
            item if isinstance(item, Candidate) else parse_candidate(item) for item in candidates
        ]

    def _configuration_error(self, candidate: Candidate) -> str | None:
        backend = self.backends.get(candidate.provider)
        if backend is None:
            return f"No backend registered for provider '{candidate.provider}'"
        return backend.configuration_error()

    @property
    def abandoned_calls(self) -> int:
        return len(self._abandoned)

    def _discard_late_result(self, task: asyncio.Future[str]) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Discarded late failure from abandoned call: %s", exc)
        else:
            logger.debug("Discarded late result from abandoned call.")

    def _abandon(self, task: asyncio.Future[str]) -> None:
        self._abandoned.add(task)
        task.add_done_callback(self._discard_late_result)

    async def _attempt(
        self,
        backend: GenerationBackend,
        candidate: Candidate,
        request: GenerationRequest,
    ) -> str:
        task = asyncio.ensure_future(
            backend.generate(
                candidate.model,
                request.system,
                request.user,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        )
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout_seconds)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task not in done:
            self._abandon(task)
            raise BackendTimeoutError(
                f"Timeout after {self.timeout_seconds:.1f}s",
                provider=candidate.provider,
                model=candidate.model,
            )
        return task.result()

    async def execute(
        self,
        candidates: Iterable[Candidate | str],
        request: GenerationRequest,
    ) -> str:
        ordered = self._normalize(candidates)
        results: list[AttemptResult] = []

        for index, candidate in enumerate(ordered):
            role = "primary" if index == 0 else "fallback"
            config_error = self._configuration_error(candidate)
            if config_error:
                results.append(
                    AttemptResult(
                        candidate=candidate,
                        success=False,
                        error=config_error,
                        kind="configuration",
                    )
                )
                logger.info("Skipping %s candidate %s: %s", role, candidate.ref, config_error)
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "candidate": candidate.ref,
                        "attempt": index,
                        "kind": "configuration",
                        "error": config_error,
                    }
                )
                continue

            logger.info("Trying %s candidate %s", role, candidate.ref)
            self._emit(
                {"event": "backend_attempt_start", "candidate": candidate.ref, "attempt": index}
            )
            backend = self.backends[candidate.provider]
            started = time.monotonic()
            try:
                content = await self._attempt(backend, candidate, request)
            except BackendTimeoutError as exc:
                kind = "timeout"
                error = str(exc)
            except Exception as exc:
                kind = "call"
                error = redact_secrets(str(exc)) or exc.__class__.__name__
            else:
                logger.info("Candidate %s succeeded", candidate.ref)
                if index > 0:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "candidate": candidate.ref,
                            "attempt": index,
                        }
                    )
                return content

            elapsed = time.monotonic() - started
            results.append(
                AttemptResult(
                    candidate=candidate,
                    success=False,
                    error=error,
                    kind=kind,
                    elapsed_seconds=elapsed,
                )
            )
            logger.warning("Candidate %s failed (%s): %s", candidate.ref, kind, error)
            self._emit(
                {
                    "event": "backend_attempt_failed",
                    "candidate": candidate.ref,
                    "attempt": index,
                    "kind": kind,
                    "error": error,
                }
            )

        raise BackendExhaustedError(results)

    def get_available_candidates(
        self, candidates: Iterable[Candidate | str]
    ) -> CandidateAvailability:
        availability = CandidateAvailability()
        for candidate in self._normalize(candidates):
            if self._configuration_error(candidate) is None:
                availability.available.append(candidate)
            else:
                availability.unavailable.append(candidate)
        return availability

    def validate_availability(
        self, candidates: Iterable[Candidate | str]
    ) -> tuple[bool, str | None]:
        ordered = self._normalize(candidates)
        if self.get_available_candidates(ordered).available:
            return True, None
        refs = ", ".join(candidate.ref for candidate in ordered)
        return False, f"No candidates available. Check credentials for: {refs}"

    async def aclose(self) -> None:
        pending = [task for task in self._abandoned if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._abandoned.clear()
