from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from stageflow.backends.base import Candidate, CandidateError, parse_candidates
from stageflow.errors import StageRegistryError

PENDING = "PENDING"
RUNNING = "RUNNING"
DONE = "DONE"
FAILED = "FAILED"
COMPLETED = "COMPLETED"
STAGE_STATUSES = (PENDING, RUNNING, DONE, FAILED)


def stage_state(stage: str, status: str) -> str:
    return f"{stage}_{status}"


def parse_state(state: str) -> tuple[str, str] | None:
    """Split ``ARCH_DONE`` into ``("ARCH", "DONE")``. Returns ``None`` for anything else."""
    stage, sep, status = state.rpartition("_")
    if not sep or not stage or status not in STAGE_STATUSES:
        return None
    return stage, status


@dataclass(slots=True)
class StageDefinition:
    id: str
    name: str
    instruction: str
    required_inputs: list[str] = field(default_factory=list)
    required_outputs: list[str] = field(default_factory=list)
    candidates: list[str] = field(default_factory=lambda: ["openai/gpt-4o-mini"])
    temperature: float = 0.3
    max_tokens: int = 4000
    position: int = 0

    @property
    def gate_id(self) -> str:
        return stage_state(self.id, DONE)

    @property
    def source(self) -> str:
        return f"{self.id.lower()}_pipeline"

    def candidate_list(self) -> list[Candidate]:
        return parse_candidates(self.candidates)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageDefinition:
        return cls(
            id=str(data["id"]).strip().upper(),
            name=str(data.get("name") or data["id"]),
            instruction=str(data.get("instruction", "")).strip(),
            required_inputs=[str(item) for item in data.get("required_inputs", [])],
            required_outputs=[str(item) for item in data.get("required_outputs", [])],
            candidates=[str(item) for item in data.get("candidates", ["openai/gpt-4o-mini"])],
            temperature=float(data.get("temperature", 0.3)),
            max_tokens=int(data.get("max_tokens", 4000)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "instruction": self.instruction,
            "required_inputs": list(self.required_inputs),
            "required_outputs": list(self.required_outputs),
            "candidates": list(self.candidates),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


_TAGGED_OUTPUT_RULES = """
Output MUST use XML artifact tags, one block per artifact:
{blocks}

Rules:
- Be specific and actionable.
- Base everything on the provided context. Do not invent requirements.
- Professional, clear tone.
""".strip()


def _instruction(role: str, job: str, outputs: list[str]) -> str:
    blocks = "\n".join(f'<artifact type="{output}">...</artifact>' for output in outputs)
    return f"{role}\nYour job: {job}\n\n{_TAGGED_OUTPUT_RULES.format(blocks=blocks)}"


DEFAULT_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(
        id="INTAKE",
        name="Intake / Account Manager",
        instruction=(
            "You are the Intake / Account Manager of a software agency.\n"
            "Your job: turn the client's idea into a concise intake brief covering target "
            "users, core problem, must-have features, integrations, timeline, constraints, "
            "success metrics and non-goals.\n"
            'Wrap the brief in <artifact type="intake_brief">...</artifact>.'
        ),
        required_outputs=["intake_brief"],
        candidates=["openai/gpt-4o-mini", "kimi/kimi-latest"],
        temperature=0.4,
    ),
    StageDefinition(
        id="PM",
        name="Product Manager",
        instruction=_instruction(
            "You are the Product Manager of a software agency.",
            "produce a Product Requirements Document and a Product Backlog.",
            ["prd", "backlog"],
        ),
        required_inputs=["intake_brief"],
        required_outputs=["prd", "backlog"],
        candidates=["openai/gpt-4o-mini", "openai/gpt-4o", "kimi/kimi-latest"],
        temperature=0.4,
        max_tokens=6000,
    ),
    StageDefinition(
        id="ARCH",
        name="Tech Lead / Architect",
        instruction=_instruction(
            "You are the Tech Lead / Architect of a software agency.",
            "produce an Architecture Document and Architecture Decision Records.",
            ["architecture", "adr"],
        ),
        required_inputs=["prd", "backlog"],
        required_outputs=["architecture", "adr"],
        candidates=["claude/claude-3-5-sonnet-20241022", "openai/gpt-4o", "kimi/kimi-latest"],
        max_tokens=8000,
    ),
    StageDefinition(
        id="ENG",
        name="Software Engineer",
        instruction=_instruction(
            "You are a Senior Software Engineer of a software agency.",
            "create a detailed engineering plan and a unified diff patch.",
            ["engineering_plan", "patch"],
        ),
        required_inputs=["architecture", "adr", "backlog"],
        required_outputs=["engineering_plan", "patch"],
        candidates=["claude/claude-3-5-sonnet-20241022", "openai/gpt-4o", "kimi/kimi-latest"],
        max_tokens=8192,
    ),
    StageDefinition(
        id="QA",
        name="QA Engineer",
        instruction=_instruction(
            "You are a Senior QA Engineer of a software agency.",
            "create a test plan, a QA test matrix and a QA report.",
            ["test_plan", "qa_matrix", "qa_report"],
        ),
        required_inputs=["prd", "engineering_plan", "patch"],
        required_outputs=["test_plan", "qa_matrix", "qa_report"],
        candidates=["openai/gpt-4o-mini", "openai/gpt-4o"],
        max_tokens=6000,
    ),
    StageDefinition(
        id="SEC",
        name="Security Auditor",
        instruction=_instruction(
            "You are a Security Architect of a software agency.",
            "create a threat model and a security findings report.",
            ["threat_model", "security_findings"],
        ),
        required_inputs=["architecture", "patch"],
        required_outputs=["threat_model", "security_findings"],
        candidates=["openai/gpt-4o-mini", "claude/claude-3-5-sonnet-20241022"],
        max_tokens=6000,
    ),
    StageDefinition(
        id="DOCS",
        name="Technical Writer",
        instruction=_instruction(
            "You are a Technical Writer of a software agency.",
            "create API documentation and a README.",
            ["docs_api", "docs_readme"],
        ),
        required_inputs=["prd", "architecture", "engineering_plan"],
        required_outputs=["docs_api", "docs_readme"],
        candidates=["kimi/kimi-latest", "openai/gpt-4o", "openai/gpt-4o-mini"],
        temperature=0.4,
        max_tokens=8000,
    ),
)


class StageRegistry:
    """Ordered, validated, read-only chain of stage definitions."""

    def __init__(self, stages: Iterable[StageDefinition]) -> None:
        ordered = list(stages)
        self._validate(ordered)
        self._stages: tuple[StageDefinition, ...] = tuple(
            StageDefinition(
                id=stage.id,
                name=stage.name,
                instruction=stage.instruction,
                required_inputs=list(stage.required_inputs),
                required_outputs=list(stage.required_outputs),
                candidates=list(stage.candidates),
                temperature=stage.temperature,
                max_tokens=stage.max_tokens,
                position=index,
            )
            for index, stage in enumerate(ordered)
        )
        self._by_id = {stage.id: stage for stage in self._stages}

    @classmethod
    def default(cls) -> StageRegistry:
        return cls(DEFAULT_STAGES)

    @classmethod
    def from_dicts(cls, payload: list[dict[str, Any]]) -> StageRegistry:
        if not payload:
            return cls.default()
        try:
            return cls(StageDefinition.from_dict(item) for item in payload)
        except KeyError as exc:
            raise StageRegistryError(f"Stage definition is missing field {exc}.") from exc

    @staticmethod
    def _validate(stages: list[StageDefinition]) -> None:
        if not stages:
            raise StageRegistryError("Stage registry must contain at least one stage.")
        seen_ids: set[str] = set()
        output_owner: dict[str, str] = {}
        for stage in stages:
            if not stage.id or stage.id == COMPLETED:
                raise StageRegistryError(f"Invalid stage identifier: {stage.id!r}")
            if stage.id in seen_ids:
                raise StageRegistryError(f"Duplicate stage identifier: {stage.id}")
            seen_ids.add(stage.id)
            for output in stage.required_outputs:
                owner = output_owner.get(output)
                if owner is not None:
                    raise StageRegistryError(
                        f"Output type '{output}' is claimed by both {owner} and {stage.id}."
                    )
                output_owner[output] = stage.id
            if not stage.candidates:
                raise StageRegistryError(f"Stage {stage.id} has no backend candidates.")
            try:
                parse_candidates(stage.candidates)
            except CandidateError as exc:
                raise StageRegistryError(f"Stage {stage.id}: {exc}") from exc

    def __iter__(self) -> Iterator[StageDefinition]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._by_id

    def ids(self) -> list[str]:
        return [stage.id for stage in self._stages]

    def get(self, stage_id: str) -> StageDefinition | None:
        return self._by_id.get(stage_id)

    def first(self) -> StageDefinition:
        return self._stages[0]

    def index(self, stage_id: str) -> int:
        stage = self._by_id.get(stage_id)
        return -1 if stage is None else stage.position

    def next_after(self, stage_id: str) -> StageDefinition | None:
        position = self.index(stage_id)
        if position == -1 or position + 1 >= len(self._stages):
            return None
        return self._stages[position + 1]

    def transitions(self) -> dict[str, list[str]]:
        table: dict[str, list[str]] = {}
        for stage in self._stages:
            table[stage_state(stage.id, PENDING)] = [stage_state(stage.id, RUNNING)]
            table[stage_state(stage.id, RUNNING)] = [
                stage_state(stage.id, DONE),
                stage_state(stage.id, FAILED),
            ]
            table[stage_state(stage.id, FAILED)] = [stage_state(stage.id, PENDING)]
            following = self.next_after(stage.id)
            table[stage_state(stage.id, DONE)] = [
                stage_state(following.id, PENDING) if following else COMPLETED
            ]
        table[COMPLETED] = []
        return table
