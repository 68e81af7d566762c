from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

from stageflow.backends.base import GenerationRequest
from stageflow.stages import StageDefinition
from stageflow.state.models import Artifact, Run

ARTIFACT_PATTERN = re.compile(r'<artifact type="([^"]+)">([\s\S]*?)</artifact>')
BRIEF_ARTIFACT_TYPES = ("intake_questions", "intake_brief")


@dataclass(slots=True)
class ParsedArtifact:
    type: str
    content: str


def _section_title(artifact_type: str) -> str:
    return artifact_type.replace("_", " ").upper()


def build_request(
    stage: StageDefinition,
    artifacts: Mapping[str, str],
    brief: str,
) -> GenerationRequest:
    """Render the stage instruction plus every available artifact into one request.

    Required inputs come first; anything else the run has produced follows as
    supplementary context.
    """
    parts = [f"# Project Brief\n{brief}"]
    for artifact_type in stage.required_inputs:
        content = artifacts.get(artifact_type)
        if content:
            parts.append(f"\n## {_section_title(artifact_type)}\n{content}")
    for artifact_type, content in artifacts.items():
        if artifact_type in stage.required_inputs or not content:
            continue
        parts.append(f"\n## {_section_title(artifact_type)} (supplementary)\n{content}")
    return GenerationRequest(
        system=stage.instruction,
        user="\n".join(parts),
        temperature=stage.temperature,
        max_tokens=stage.max_tokens,
    )


def parse_artifacts(response: str, stage: StageDefinition) -> list[ParsedArtifact]:
    parsed = [
        ParsedArtifact(type=match.group(1).strip(), content=match.group(2).strip())
        for match in ARTIFACT_PATTERN.finditer(response)
    ]
    if not parsed and stage.required_outputs:
        # Backend ignored the tag format: keep the whole reply as the primary output.
        parsed.append(ParsedArtifact(type=stage.required_outputs[0], content=response.strip()))
    return parsed


def resolve_brief(run: Run, artifacts: Mapping[str, Artifact]) -> str:
    if run.brief.strip():
        return run.brief.strip()
    for artifact_type in BRIEF_ARTIFACT_TYPES:
        artifact = artifacts.get(artifact_type)
        if artifact is not None and artifact.content.strip():
            return artifact.content.strip()
    return ""
