import json
import logging
import re
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from stageflow import cli as cli_module
from stageflow.backends import BackendCallError, BackendRouter, GenerationBackend
from stageflow.cli import cli
from stageflow.config import StageflowConfig, load_config

TAG_PATTERN = re.compile(r'<artifact type="([^"]+)">')


class FakeBackend(GenerationBackend):
    def __init__(self) -> None:
        self.provider = "openai"
        self.failing_stage: str | None = None

    def configuration_error(self) -> str | None:
        return None

    async def generate(
        self,
        model: str,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> str:
        _ = model, user, temperature, max_tokens
        if self.failing_stage and self.failing_stage in system:
            raise BackendCallError("upstream unavailable")
        return "\n".join(
            f'<artifact type="{item}">{item} body</artifact>'
            for item in TAG_PATTERN.findall(system)
        )


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    logging.getLogger("stageflow").handlers.clear()


@pytest.fixture
def fake_backend(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeBackend:
    backend = FakeBackend()

    def _build_router(config: StageflowConfig) -> BackendRouter:
        _ = config
        return BackendRouter({"openai": backend, "kimi": backend, "claude": backend})

    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli_module, "_build_router", _build_router)
    return backend


def _run_id(output: str) -> str:
    match = re.search(r"Created run (\S+)", output)
    assert match, output
    return match.group(1)


def test_init_writes_config_and_state_dir(tmp_path: Path, fake_backend: FakeBackend) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["init", "--with-stages"])

    assert result.exit_code == 0, result.output
    assert "Initialized stageflow" in result.output
    assert (tmp_path / ".stageflow").is_dir()
    config = load_config(tmp_path / "stageflow.toml")
    assert [stage["id"] for stage in config.stages][0] == "INTAKE"


def test_run_status_and_runs_flow(fake_backend: FakeBackend) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    result = runner.invoke(cli, ["run", "A recipe sharing app"])
    assert result.exit_code == 0, result.output
    assert "State: COMPLETED" in result.output
    assert "[pipeline_completed]" in result.output
    run_id = _run_id(result.output)

    status = runner.invoke(cli, ["status", run_id])
    assert status.exit_code == 0, status.output
    payload = json.loads(status.output[status.output.index("{") :])
    assert payload["current_stage"] == "COMPLETED"
    assert payload["progress"] == {"completed_stages": 7, "total_stages": 7}
    assert "docs_readme" in payload["artifacts"]
    assert "events" not in payload

    runs = runner.invoke(cli, ["runs"])
    assert run_id in runs.output


def test_failed_run_can_be_retried(fake_backend: FakeBackend) -> None:
    runner = CliRunner()
    fake_backend.failing_stage = "Security Architect"

    result = runner.invoke(cli, ["run", "--quiet", "A chat app"])
    assert result.exit_code != 0
    assert "stopped in SEC_FAILED" in result.output
    assert "upstream unavailable" in result.output
    run_id = _run_id(result.output)

    fake_backend.failing_stage = None
    retried = runner.invoke(cli, ["retry", run_id])
    assert retried.exit_code == 0, retried.output
    assert "State: COMPLETED" in retried.output

    again = runner.invoke(cli, ["retry", run_id])
    assert again.exit_code != 0
    assert "nothing to retry" in again.output


def test_retry_rejects_wrong_stage(fake_backend: FakeBackend) -> None:
    runner = CliRunner()
    fake_backend.failing_stage = "Product Manager"
    run_id = _run_id(runner.invoke(cli, ["run", "--quiet", "brief"]).output)

    result = runner.invoke(cli, ["retry", run_id, "--stage", "ARCH"])

    assert result.exit_code != 0
    assert "Invalid transition" in result.output


def test_status_unknown_run(fake_backend: FakeBackend) -> None:
    result = CliRunner().invoke(cli, ["status", "run-nope"])

    assert result.exit_code != 0
    assert "Run not found" in result.output


def test_stages_command_lists_chain(fake_backend: FakeBackend) -> None:
    result = CliRunner().invoke(cli, ["stages"])

    assert result.exit_code == 0
    assert "1. INTAKE" in result.output
    assert "7. DOCS" in result.output
    assert "inputs: prd, backlog" in result.output


def test_backends_command_reports_credentials(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("OPENAI_API_KEY", "KIMI_API_KEY", "OPENROUTER_API_KEY", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")

    result = CliRunner().invoke(cli, ["backends", "--json"])

    assert result.exit_code == 0, result.output
    report = json.loads(result.output[result.output.index("{") :])
    assert report["INTAKE"]["ready"] is True
    assert report["INTAKE"]["unavailable"] == ["kimi/kimi-latest"]
    assert report["ARCH"]["available"] == ["openai/gpt-4o"]
    assert report["QA"]["message"] is None
