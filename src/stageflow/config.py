from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

StateBackendName = Literal["local", "memory"]
LogFormat = Literal["text", "json"]


@dataclass(slots=True)
class PipelineConfig:
    max_stage_retries: int = 2
    require_gate_pass: bool = True


@dataclass(slots=True)
class RouterConfig:
    timeout_seconds: float = 120.0
    verbose: bool = False


@dataclass(slots=True)
class ProvidersConfig:
    openai_api_key_env: str = "OPENAI_API_KEY"
    kimi_api_key_env: str = "KIMI_API_KEY"
    kimi_base_url: str = "https://api.moonshot.ai/v1"
    openrouter_api_key_env: str = "OPENROUTER_API_KEY"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    anthropic_api_key_env: str = "ANTHROPIC_API_KEY"


@dataclass(slots=True)
class EventsConfig:
    channel_size: int = 100
    history_size: int = 200


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "local"
    directory: str = ".stageflow"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    format: LogFormat = "text"


@dataclass(slots=True)
class StageflowConfig:
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    stages: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def default(cls) -> StageflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> StageflowConfig:
        stages = data.get("stages", [])
        return cls(
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            router=RouterConfig(**data.get("router", {})),
            providers=ProvidersConfig(**data.get("providers", {})),
            events=EventsConfig(**data.get("events", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
            stages=[dict(item) for item in stages if isinstance(item, dict)],
        )

    def to_dict(self) -> dict:
        return {
            "pipeline": {
                "max_stage_retries": self.pipeline.max_stage_retries,
                "require_gate_pass": self.pipeline.require_gate_pass,
            },
            "router": {
                "timeout_seconds": self.router.timeout_seconds,
                "verbose": self.router.verbose,
            },
            "providers": {
                "openai_api_key_env": self.providers.openai_api_key_env,
                "kimi_api_key_env": self.providers.kimi_api_key_env,
                "kimi_base_url": self.providers.kimi_base_url,
                "openrouter_api_key_env": self.providers.openrouter_api_key_env,
                "openrouter_base_url": self.providers.openrouter_base_url,
                "anthropic_api_key_env": self.providers.anthropic_api_key_env,
            },
            "events": {
                "channel_size": self.events.channel_size,
                "history_size": self.events.history_size,
            },
            "state": {
                "backend": self.state.backend,
                "directory": self.state.directory,
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
            "stages": [dict(item) for item in self.stages],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: StageflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["pipeline", "router", "providers", "events", "state", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for stage in data["stages"]:
        lines.append("[[stages]]")
        for key, value in stage.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> StageflowConfig:
    if not path.exists():
        return StageflowConfig.default()
    return StageflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: StageflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
