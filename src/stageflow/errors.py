from __future__ import annotations


class StageflowError(RuntimeError):
    """Base class for orchestration failures."""


class StageRegistryError(StageflowError):
    """Raised when a stage registry violates its ordering or vocabulary rules."""


class InvalidTransitionError(StageflowError):
    """Raised when a run would move along an edge the state machine does not have."""

    def __init__(self, from_state: str, to_state: str, *, run_id: str | None = None) -> None:
        target = f" for run {run_id}" if run_id else ""
        super().__init__(f"Invalid transition{target}: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state
        self.run_id = run_id


class StageGateError(StageflowError):
    """Raised when a stage finished but its done gate is not satisfied."""

    def __init__(self, stage: str, missing: list[str]) -> None:
        super().__init__(f"Stage {stage} gate failed. Missing: {', '.join(missing)}")
        self.stage = stage
        self.missing = list(missing)


class UnknownRunError(StageflowError):
    """Raised when a run identifier does not resolve to a stored run."""
