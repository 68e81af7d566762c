import tomllib
from pathlib import Path

from stageflow import __version__
from stageflow.config import StageflowConfig, dumps_toml, load_config, save_config
from stageflow.stages import StageRegistry


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "stageflow.toml"
    config = StageflowConfig.default()
    config.pipeline.max_stage_retries = 4
    config.pipeline.require_gate_pass = False
    config.router.timeout_seconds = 30.0
    config.router.verbose = True
    config.providers.kimi_base_url = "https://kimi.example/v1"
    config.events.channel_size = 10
    config.state.backend = "memory"
    config.state.directory = ".flow"
    config.logging.level = "DEBUG"
    config.logging.format = "json"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.pipeline.max_stage_retries == 4
    assert loaded.pipeline.require_gate_pass is False
    assert loaded.router.timeout_seconds == 30.0
    assert loaded.router.verbose is True
    assert loaded.providers.kimi_base_url == "https://kimi.example/v1"
    assert loaded.providers.openai_api_key_env == "OPENAI_API_KEY"
    assert loaded.events.channel_size == 10
    assert loaded.events.history_size == 200
    assert loaded.state.backend == "memory"
    assert loaded.state.directory == ".flow"
    assert loaded.logging.format == "json"
    assert loaded.stages == []


def test_stage_overrides_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "stageflow.toml"
    config = StageflowConfig.default()
    config.stages = [stage.to_dict() for stage in StageRegistry.default()]

    save_config(config_path, config)
    loaded = load_config(config_path)
    registry = StageRegistry.from_dicts(loaded.stages)

    assert registry.ids() == StageRegistry.default().ids()
    assert registry.get("ENG").instruction == StageRegistry.default().get("ENG").instruction
    assert registry.get("ENG").max_tokens == 8192
    assert registry.get("PM").temperature == 0.4


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.pipeline.max_stage_retries == 2
    assert loaded.pipeline.require_gate_pass is True
    assert loaded.router.timeout_seconds == 120.0
    assert loaded.state.backend == "local"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(StageflowConfig.default())

    for section in ("[pipeline]", "[router]", "[providers]", "[events]", "[state]", "[logging]"):
        assert section in rendered
    assert "timeout_seconds = 120.0" in rendered
    assert "[[stages]]" not in rendered
    assert tomllib.loads(rendered)["pipeline"]["max_stage_retries"] == 2


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
