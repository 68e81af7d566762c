import pytest

from stageflow.errors import StageRegistryError
from stageflow.stages import (
    COMPLETED,
    DEFAULT_STAGES,
    StageDefinition,
    StageRegistry,
    parse_state,
    stage_state,
)


def _stage(stage_id: str, outputs: list[str], inputs: list[str] | None = None) -> StageDefinition:
    return StageDefinition(
        id=stage_id,
        name=stage_id.title(),
        instruction=f"do {stage_id}",
        required_inputs=inputs or [],
        required_outputs=outputs,
    )


def test_default_registry_order_and_positions() -> None:
    registry = StageRegistry.default()

    assert registry.ids() == ["INTAKE", "PM", "ARCH", "ENG", "QA", "SEC", "DOCS"]
    assert [stage.position for stage in registry] == list(range(7))
    assert registry.first().id == "INTAKE"
    assert registry.get("ARCH").required_inputs == ["prd", "backlog"]
    assert registry.get("PM").gate_id == "PM_DONE"
    assert registry.get("PM").source == "pm_pipeline"
    assert len(registry) == len(DEFAULT_STAGES)


def test_registry_next_after_and_index() -> None:
    registry = StageRegistry.default()

    assert registry.next_after("INTAKE").id == "PM"
    assert registry.next_after("DOCS") is None
    assert registry.next_after("NOPE") is None
    assert registry.index("QA") == 4
    assert registry.index("NOPE") == -1
    assert "SEC" in registry
    assert "NOPE" not in registry


def test_registry_rejects_duplicate_ids() -> None:
    with pytest.raises(StageRegistryError, match="Duplicate"):
        StageRegistry([_stage("A", ["x"]), _stage("A", ["y"])])


def test_registry_rejects_shared_output_owner() -> None:
    with pytest.raises(StageRegistryError, match="claimed by both A and B"):
        StageRegistry([_stage("A", ["x"]), _stage("B", ["x"])])


def test_registry_rejects_empty_and_reserved_ids() -> None:
    with pytest.raises(StageRegistryError):
        StageRegistry([])
    with pytest.raises(StageRegistryError, match="Invalid stage identifier"):
        StageRegistry([_stage(COMPLETED, ["x"])])


def test_registry_rejects_bad_candidates() -> None:
    stage = _stage("A", ["x"])
    stage.candidates = ["gemini/pro"]
    with pytest.raises(StageRegistryError, match="Invalid provider"):
        StageRegistry([stage])

    stage.candidates = []
    with pytest.raises(StageRegistryError, match="no backend candidates"):
        StageRegistry([stage])


def test_registry_from_dicts_uses_defaults_when_empty() -> None:
    assert StageRegistry.from_dicts([]).ids() == StageRegistry.default().ids()

    registry = StageRegistry.from_dicts(
        [
            {"id": "draft", "required_outputs": ["draft"], "candidates": ["kimi/kimi-latest"]},
            {"id": "review", "required_inputs": ["draft"], "required_outputs": ["review"]},
        ]
    )

    assert registry.ids() == ["DRAFT", "REVIEW"]
    assert registry.get("DRAFT").candidate_list()[0].provider == "kimi"
    assert registry.get("REVIEW").candidates == ["openai/gpt-4o-mini"]


def test_registry_from_dicts_reports_missing_id() -> None:
    with pytest.raises(StageRegistryError, match="missing field"):
        StageRegistry.from_dicts([{"name": "no id"}])


def test_transition_table_covers_every_edge() -> None:
    registry = StageRegistry([_stage("A", ["x"]), _stage("B", ["y"])])
    table = registry.transitions()

    assert table["A_PENDING"] == ["A_RUNNING"]
    assert table["A_RUNNING"] == ["A_DONE", "A_FAILED"]
    assert table["A_FAILED"] == ["A_PENDING"]
    assert table["A_DONE"] == ["B_PENDING"]
    assert table["B_DONE"] == [COMPLETED]
    assert table[COMPLETED] == []


def test_state_helpers() -> None:
    assert stage_state("ARCH", "DONE") == "ARCH_DONE"
    assert parse_state("ARCH_DONE") == ("ARCH", "DONE")
    assert parse_state("CODE_REVIEW_FAILED") == ("CODE_REVIEW", "FAILED")
    assert parse_state(COMPLETED) is None
    assert parse_state("ARCH_WAITING") is None
