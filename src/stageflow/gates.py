from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from stageflow.stages import COMPLETED, DONE, PENDING, StageRegistry, parse_state, stage_state

GateStatus = Literal["PENDING", "PASS", "FAIL"]

LEGACY_GATE_ARTIFACTS: dict[str, list[str]] = {
    "REQUIREMENTS_REVIEW": ["REQUIREMENTS_DOC"],
    "CODE_REVIEW": ["CODE_SNAPSHOT"],
    "SECURITY_REVIEW": ["SECURITY_SCAN"],
    "SBOM_AUDIT": ["SBOM"],
}

LEGACY_GATE_DESCRIPTIONS: dict[str, str] = {
    "REQUIREMENTS_REVIEW": "Review requirements",
    "CODE_REVIEW": "Review code",
    "SECURITY_REVIEW": "Security scan",
    "SBOM_AUDIT": "SBOM audit",
}

STRATEGY_GATES: dict[str, dict[str, list[str]]] = {
    "A": {
        "standard": ["REQUIREMENTS_REVIEW", "CODE_REVIEW"],
        "elevated": ["REQUIREMENTS_REVIEW", "CODE_REVIEW", "SECURITY_REVIEW"],
        "critical": ["REQUIREMENTS_REVIEW", "CODE_REVIEW", "SECURITY_REVIEW", "SBOM_AUDIT"],
    },
    "B": {
        "standard": ["CODE_REVIEW"],
        "elevated": ["CODE_REVIEW", "SECURITY_REVIEW"],
        "critical": ["CODE_REVIEW", "SECURITY_REVIEW"],
    },
    "C": {
        "standard": [],
        "elevated": ["CODE_REVIEW"],
        "critical": ["CODE_REVIEW", "SECURITY_REVIEW"],
    },
}


@dataclass(slots=True)
class StageGateResult:
    satisfied: bool
    missing: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GateResult:
    gate_id: str
    status: GateStatus
    reason: str = ""

    @property
    def passed(self) -> bool:
        return self.status == "PASS"


def _artifact_type(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        return str(item.get("type", ""))
    return str(getattr(item, "type", ""))


def _gate_fields(item: Any) -> tuple[str, str, str]:
    if isinstance(item, dict):
        return (
            str(item.get("gate_id", "")),
            str(item.get("status", "")),
            str(item.get("reason", "")),
        )
    return (
        str(getattr(item, "gate_id", "")),
        str(getattr(item, "status", "")),
        str(getattr(item, "reason", "")),
    )


class GateEngine:
    """Readiness checks over a stage registry. Holds no per-run state."""

    def __init__(self, registry: StageRegistry) -> None:
        self.registry = registry
        self._transitions = registry.transitions()

    def stage_requirements(self) -> dict[str, list[str]]:
        return {stage.gate_id: list(stage.required_outputs) for stage in self.registry}

    def check_stage_gate(self, stage: str, available_types: Iterable[str]) -> StageGateResult:
        definition = self.registry.get(stage)
        if definition is None:
            return StageGateResult(satisfied=True)
        available = set(available_types)
        missing = [item for item in definition.required_outputs if item not in available]
        return StageGateResult(satisfied=not missing, missing=missing)

    def get_next_stage(self, current_state: str) -> str | None:
        if current_state == COMPLETED:
            return None
        parsed = parse_state(current_state)
        if parsed is None or parsed[1] != DONE:
            return None
        following = self.registry.next_after(parsed[0])
        if following is None:
            return None
        return stage_state(following.id, PENDING)

    def check_gate(
        self,
        gate_id: str,
        artifacts_present: Iterable[Any],
        existing: Iterable[Any] = (),
    ) -> GateResult:
        for record in existing:
            record_id, status, reason = _gate_fields(record)
            if record_id == gate_id and status == "PASS":
                return GateResult(gate_id=gate_id, status="PASS", reason=reason)

        requirements = {**LEGACY_GATE_ARTIFACTS, **self.stage_requirements()}
        needed = requirements.get(gate_id, [])
        present = {_artifact_type(item) for item in artifacts_present}
        missing = [item for item in needed if item not in present]
        if missing:
            return GateResult(
                gate_id=gate_id, status="FAIL", reason=f"Missing: {', '.join(missing)}"
            )
        return GateResult(gate_id=gate_id, status="PASS")

    @staticmethod
    def required_gates(strategy: str, risk: str) -> list[str]:
        return list(STRATEGY_GATES.get(strategy, {}).get(risk, []))

    def gate_definitions(self) -> list[dict[str, Any]]:
        definitions = [
            {
                "type": stage.gate_id,
                "description": f"{stage.name} completed",
                "requires_artifacts": list(stage.required_outputs),
            }
            for stage in self.registry
        ]
        definitions.extend(
            {
                "type": gate_id,
                "description": LEGACY_GATE_DESCRIPTIONS[gate_id],
                "requires_artifacts": list(required),
            }
            for gate_id, required in LEGACY_GATE_ARTIFACTS.items()
        )
        return definitions

    def allowed_transitions(self, state: str) -> list[str]:
        return list(self._transitions.get(state, []))

    def is_valid_transition(self, from_state: str, to_state: str) -> bool:
        return to_state in self._transitions.get(from_state, [])
