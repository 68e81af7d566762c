from stageflow.prompting import build_request, parse_artifacts, resolve_brief
from stageflow.stages import StageRegistry
from stageflow.state.models import Artifact, Run


def _artifact(artifact_type: str, content: str) -> Artifact:
    return Artifact(id=f"art-{artifact_type}", run_id="run-1", type=artifact_type, content=content)


def test_build_request_orders_required_then_supplementary() -> None:
    stage = StageRegistry.default().get("ARCH")
    request = build_request(
        stage,
        {"intake_brief": "brief text", "backlog": "stories", "prd": "requirements"},
        "A todo app",
    )

    assert request.system == stage.instruction
    assert request.max_tokens == stage.max_tokens
    assert request.user.startswith("# Project Brief\nA todo app")
    prd_at = request.user.index("## PRD\nrequirements")
    backlog_at = request.user.index("## BACKLOG\nstories")
    supplementary_at = request.user.index("## INTAKE BRIEF (supplementary)\nbrief text")
    assert prd_at < backlog_at < supplementary_at


def test_build_request_skips_missing_inputs() -> None:
    stage = StageRegistry.default().get("PM")
    request = build_request(stage, {}, "")

    assert request.user == "# Project Brief\n"


def test_parse_artifacts_reads_tagged_blocks() -> None:
    stage = StageRegistry.default().get("PM")
    response = (
        "Here you go.\n"
        '<artifact type="prd">\n# PRD\nGoals\n</artifact>\n'
        '<artifact type=" backlog ">- story 1</artifact>'
    )

    parsed = parse_artifacts(response, stage)

    assert [(item.type, item.content) for item in parsed] == [
        ("prd", "# PRD\nGoals"),
        ("backlog", "- story 1"),
    ]


def test_parse_artifacts_falls_back_to_first_required_output() -> None:
    stage = StageRegistry.default().get("PM")

    parsed = parse_artifacts("  plain prose reply  ", stage)

    assert len(parsed) == 1
    assert parsed[0].type == "prd"
    assert parsed[0].content == "plain prose reply"


def test_resolve_brief_prefers_run_brief_then_intake_artifacts() -> None:
    run = Run(id="run-1", state="PM_PENDING", brief="  from run  ")
    artifacts = {"intake_brief": _artifact("intake_brief", "from intake")}

    assert resolve_brief(run, artifacts) == "from run"

    run.brief = ""
    assert resolve_brief(run, artifacts) == "from intake"
    assert resolve_brief(run, {"intake_questions": _artifact("intake_questions", "q?")}) == "q?"
    assert resolve_brief(run, {}) == ""
