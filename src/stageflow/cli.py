from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from stageflow import __version__
from stageflow.backends import BackendRouter, CandidateError, build_backends
from stageflow.config import StageflowConfig, load_config, save_config
from stageflow.errors import StageflowError
from stageflow.events import EventBus, PipelineEvent
from stageflow.log import setup_logging
from stageflow.orchestrator import RunOrchestrator
from stageflow.stages import COMPLETED, FAILED, StageRegistry, parse_state
from stageflow.state import PipelineRepository, Run, StateError, StateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: StageflowConfig
    registry: StageRegistry
    repository: PipelineRepository
    events: EventBus
    router: BackendRouter
    orchestrator: RunOrchestrator


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _build_store(root: Path, config: StageflowConfig) -> StateStore:
    if config.state.backend == "memory":
        return StateStore.in_memory()
    return StateStore(root / config.state.directory)


def _build_router(config: StageflowConfig) -> BackendRouter:
    timeout_seconds = max(1.0, float(config.router.timeout_seconds))
    return BackendRouter(
        build_backends(config.providers, timeout_seconds=timeout_seconds),
        timeout_seconds=timeout_seconds,
        event_hook=lambda event: logger.debug("Backend event: %s", event),
    )


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
        registry = StageRegistry.from_dicts(config.stages)
    except (TypeError, ValueError, StageflowError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc

    level = "DEBUG" if config.router.verbose else config.logging.level
    setup_logging(level, config.logging.format)

    repository = PipelineRepository(_build_store(root, config))
    events = EventBus(
        channel_size=config.events.channel_size,
        history_size=config.events.history_size,
    )
    router = _build_router(config)
    orchestrator = RunOrchestrator(
        repository,
        router,
        registry,
        events=events,
        config=config.pipeline,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        registry=registry,
        repository=repository,
        events=events,
        router=router,
        orchestrator=orchestrator,
    )


def _runtime_from_option(config_value: str) -> Runtime:
    root = Path.cwd().resolve()
    return _load_runtime(root, _resolve_config_path(root, config_value))


def _drive(runtime: Runtime, step: Callable[[], Awaitable[Run]]) -> Run:
    async def _main() -> Run:
        try:
            return await step()
        finally:
            await runtime.router.aclose()

    try:
        return asyncio.run(_main())
    except (StageflowError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_event(event: PipelineEvent) -> None:
    stage = f" {event.stage}" if event.stage else ""
    details = f" {json.dumps(event.data, ensure_ascii=False)}" if event.data else ""
    click.echo(f"[{event.type}]{stage}{details}")


def _report(run: Run) -> None:
    click.echo(f"Run ID: {run.id}")
    click.echo(f"State: {run.state}")
    if run.state != COMPLETED:
        reason = f": {run.last_error}" if run.last_error else ""
        raise click.ClickException(f"Run {run.id} stopped in {run.state}{reason}")


@click.group()
@click.version_option(__version__, prog_name="stageflow")
def cli() -> None:
    """Stageflow CLI."""


@cli.command("init")
@click.option("--config", "config_value", default="stageflow.toml", show_default=True)
@click.option("--with-stages", is_flag=True, default=False, help="Write the default stage chain.")
def init_command(config_value: str, with_stages: bool) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if with_stages and not config.stages:
        config.stages = [stage.to_dict() for stage in StageRegistry.default()]
    save_config(config_path, config)

    if config.state.backend == "local":
        (root / config.state.directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized stageflow in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State backend: {config.state.backend}")


@cli.command("run")
@click.argument("brief")
@click.option("--config", "config_value", default="stageflow.toml", show_default=True)
@click.option("--quiet", is_flag=True, default=False, help="Do not print pipeline events.")
def run_command(brief: str, config_value: str, quiet: bool) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        run = runtime.orchestrator.create_run(brief)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created run {run.id}")
    if not quiet:
        runtime.events.subscribe(run.id, _echo_event)
    _report(_drive(runtime, lambda: runtime.orchestrator.start_run(run.id)))


@cli.command("retry")
@click.argument("run_id")
@click.option("--stage", "stage_id", default=None, help="Defaults to the stage the run failed in.")
@click.option("--config", "config_value", default="stageflow.toml", show_default=True)
@click.option("--quiet", is_flag=True, default=False, help="Do not print pipeline events.")
def retry_command(run_id: str, stage_id: str | None, config_value: str, quiet: bool) -> None:
    runtime = _runtime_from_option(config_value)
    if stage_id is None:
        run = runtime.repository.get_run(run_id)
        if run is None:
            raise click.ClickException(f"Run not found: {run_id}")
        parsed = parse_state(run.state)
        if parsed is None or parsed[1] != FAILED:
            raise click.ClickException(f"Run {run_id} is in {run.state}; nothing to retry.")
        stage_id = parsed[0]
    if not quiet:
        runtime.events.subscribe(run_id, _echo_event)
    target = stage_id
    _report(_drive(runtime, lambda: runtime.orchestrator.retry_stage(run_id, target)))


@cli.command("status")
@click.argument("run_id")
@click.option("--config", "config_value", default="stageflow.toml", show_default=True)
def status_command(run_id: str, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        payload = runtime.orchestrator.status(run_id)
    except (StageflowError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc
    # Event history lives in the process that ran the stages; this one has none.
    payload.pop("events", None)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("runs")
@click.option("--config", "config_value", default="stageflow.toml", show_default=True)
def runs_command(config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    runs = runtime.repository.list_runs()
    if not runs:
        click.echo("No runs found.")
        return
    for run in runs:
        click.echo(f"{run.id} {run.state:<16} {run.created_at}")


@cli.command("stages")
@click.option("--config", "config_value", default="stageflow.toml", show_default=True)
def stages_command(config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    for stage in runtime.registry:
        inputs = ", ".join(stage.required_inputs) or "-"
        outputs = ", ".join(stage.required_outputs) or "-"
        click.echo(f"{stage.position + 1}. {stage.id} ({stage.name})")
        click.echo(f"   inputs: {inputs}")
        click.echo(f"   outputs: {outputs}")
        click.echo(f"   candidates: {', '.join(stage.candidates)}")


@cli.command("backends")
@click.option("--config", "config_value", default="stageflow.toml", show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False)
def backends_command(config_value: str, as_json: bool) -> None:
    runtime = _runtime_from_option(config_value)
    report: dict[str, Any] = {}
    try:
        for stage in runtime.registry:
            availability = runtime.router.get_available_candidates(stage.candidate_list())
            ok, message = runtime.router.validate_availability(stage.candidate_list())
            report[stage.id] = {
                "available": [candidate.ref for candidate in availability.available],
                "unavailable": [candidate.ref for candidate in availability.unavailable],
                "ready": ok,
                "message": message,
            }
    except CandidateError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(report, ensure_ascii=False, indent=2))
        return
    for stage_id, entry in report.items():
        marker = "ok" if entry["ready"] else "missing credentials"
        click.echo(f"{stage_id}: {marker}")
        for ref in entry["available"]:
            click.echo(f"   + {ref}")
        for ref in entry["unavailable"]:
            click.echo(f"   - {ref}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
