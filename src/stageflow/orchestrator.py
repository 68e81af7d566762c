from __future__ import annotations

import logging
from typing import Any

from stageflow.backends.router import BackendRouter
from stageflow.config import PipelineConfig
from stageflow.errors import (
    InvalidTransitionError,
    StageflowError,
    StageGateError,
    UnknownRunError,
)
from stageflow.events import EventBus, EventType, PipelineEvent
from stageflow.gates import GateEngine
from stageflow.prompting import build_request, parse_artifacts, resolve_brief
from stageflow.stages import (
    COMPLETED,
    DONE,
    FAILED,
    PENDING,
    RUNNING,
    StageDefinition,
    StageRegistry,
    parse_state,
    stage_state,
)
from stageflow.state.models import GateRecord, Run
from stageflow.state.repository import PipelineRepository
from stageflow.state.store import StateError

logger = logging.getLogger(__name__)


class RunOrchestrator:
    """Drives one run through the stage chain.

    Once started, stages execute back to back inside the caller's task: a
    completed stage immediately enters the next one, a failed stage is retried
    up to ``max_stage_retries`` times, and a stage that exhausts its retries
    leaves the run parked in ``<STAGE>_FAILED`` until ``retry_stage`` is called.

    Nothing here serializes concurrent calls for the same run. Callers must not
    start or retry a run that is already ``_RUNNING``.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        router: BackendRouter,
        registry: StageRegistry | None = None,
        *,
        gates: GateEngine | None = None,
        events: EventBus | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self.repository = repository
        self.router = router
        self.registry = registry or StageRegistry.default()
        self.gates = gates or GateEngine(self.registry)
        self.events = events or EventBus()
        self.config = config or PipelineConfig()

    @property
    def max_stage_retries(self) -> int:
        return max(0, int(self.config.max_stage_retries))

    def _emit(
        self,
        run_id: str,
        event_type: EventType,
        stage: str | None = None,
        **data: Any,
    ) -> None:
        self.events.emit(PipelineEvent(run_id=run_id, type=event_type, stage=stage, data=data))

    def _require_run(self, run_id: str) -> Run:
        run = self.repository.get_run(run_id)
        if run is None:
            raise UnknownRunError(f"Run not found: {run_id}")
        return run

    def _require_stage(self, stage_id: str) -> StageDefinition:
        stage = self.registry.get(stage_id)
        if stage is None:
            raise StageflowError(f"No stage definition for: {stage_id}")
        return stage

    def _transition(self, run: Run, target: str, *, force: bool = False) -> None:
        if not force and not self.gates.is_valid_transition(run.state, target):
            raise InvalidTransitionError(run.state, target, run_id=run.id)
        logger.debug("Run %s: %s -> %s", run.id, run.state, target)
        previous, run.state = run.state, target
        try:
            self.repository.save_run(run)
        except Exception:
            run.state = previous
            raise

    def create_run(self, brief: str = "") -> Run:
        first = self.registry.first()
        run = self.repository.create_run(stage_state(first.id, PENDING), brief=brief)
        logger.info("Created run %s", run.id)
        return run

    async def start_run(self, run_id: str) -> Run:
        run = self._require_run(run_id)
        first = self.registry.first()
        run.retry_counts.clear()
        run.last_error = None
        self._transition(run, stage_state(first.id, PENDING), force=True)
        logger.info("Starting run %s at stage %s", run_id, first.id)
        return await self._drive(run_id, first.id)

    async def execute_stage(self, run_id: str, stage: str) -> Run:
        return await self._drive(run_id, stage)

    async def advance(self, run_id: str) -> Run:
        run = self._require_run(run_id)
        parsed = parse_state(run.state)
        if parsed is None or parsed[1] != DONE:
            logger.debug("Run %s is in %s; nothing to advance.", run_id, run.state)
            return run
        next_stage = self._advance_state(run)
        if next_stage is None:
            return run
        return await self._drive(run_id, next_stage)

    async def retry_stage(self, run_id: str, stage: str) -> Run:
        self._require_stage(stage)
        run = self._require_run(run_id)
        pending = stage_state(stage, PENDING)
        if run.state != stage_state(stage, FAILED):
            raise InvalidTransitionError(run.state, pending, run_id=run_id)
        run.retry_counts.pop(stage, None)
        self._transition(run, pending)
        logger.info("Manual retry of stage %s for run %s", stage, run_id)
        return await self._drive(run_id, stage)

    async def _drive(self, run_id: str, stage: str) -> Run:
        next_stage: str | None = stage
        while next_stage is not None:
            next_stage = await self._run_stage(run_id, next_stage)
        return self._require_run(run_id)

    async def _run_stage(self, run_id: str, stage_id: str) -> str | None:
        """Run one attempt of a stage and return the stage to execute next, if any."""
        stage = self._require_stage(stage_id)
        run = self._require_run(run_id)
        self._transition(run, stage_state(stage.id, RUNNING))
        self._emit(run_id, "stage_started", stage.id)
        logger.info("Run %s: stage %s started", run_id, stage.id)

        try:
            latest = self.repository.latest_artifacts(run_id)
            brief = resolve_brief(run, latest)
            request = build_request(
                stage,
                {artifact_type: item.content for artifact_type, item in latest.items()},
                brief,
            )
            response = await self.router.execute(stage.candidate_list(), request)

            produced: list[str] = []
            for parsed in parse_artifacts(response, stage):
                self.repository.create_artifact(
                    run_id, parsed.type, parsed.content, source=stage.source
                )
                produced.append(parsed.type)
                self._emit(run_id, "artifact_created", stage.id, artifact_type=parsed.type)

            gate = self.gates.check_stage_gate(stage.id, set(latest) | set(produced))
            self.repository.upsert_gate(
                GateRecord(
                    run_id=run_id,
                    gate_id=stage.gate_id,
                    status="PASS" if gate.satisfied else "FAIL",
                    reason="" if gate.satisfied else f"Missing: {', '.join(gate.missing)}",
                )
            )
            self._emit(
                run_id, "gate_checked", stage.id, passed=gate.satisfied, missing=gate.missing
            )
            if not gate.satisfied:
                if self.config.require_gate_pass:
                    raise StageGateError(stage.id, gate.missing)
                logger.warning(
                    "Run %s: stage %s completed with missing outputs: %s",
                    run_id,
                    stage.id,
                    ", ".join(gate.missing),
                )

            self._transition(run, stage_state(stage.id, DONE))
        except Exception as exc:
            return self._handle_failure(run, stage, exc)

        self._emit(run_id, "stage_completed", stage.id)
        logger.info("Run %s: stage %s completed", run_id, stage.id)
        try:
            return self._advance_state(run)
        except StateError as exc:
            # The stage result is stored; the run stays in <STAGE>_DONE for advance().
            logger.error("Run %s: could not advance past stage %s: %s", run_id, stage.id, exc)
            return None

    def _advance_state(self, run: Run) -> str | None:
        next_state = self.gates.get_next_stage(run.state)
        if next_state is None:
            self._transition(run, COMPLETED)
            self._emit(run.id, "pipeline_completed")
            logger.info("Run %s completed", run.id)
            return None
        self._transition(run, next_state)
        parsed = parse_state(next_state)
        return parsed[0] if parsed else None

    def _handle_failure(self, run: Run, stage: StageDefinition, error: Exception) -> str | None:
        message = str(error) or error.__class__.__name__
        logger.error("Run %s: stage %s failed: %s", run.id, stage.id, message)
        run.last_error = message
        self._transition(run, stage_state(stage.id, FAILED))
        self._emit(run.id, "stage_failed", stage.id, error=message)

        retries = run.retries_for(stage.id)
        if retries >= self.max_stage_retries:
            logger.error(
                "Run %s: max retries exceeded for stage %s; run left in %s",
                run.id,
                stage.id,
                run.state,
            )
            return None

        run.retry_counts[stage.id] = retries + 1
        self._transition(run, stage_state(stage.id, PENDING))
        self._emit(
            run.id,
            "stage_retry",
            stage.id,
            attempt=retries + 1,
            max_retries=self.max_stage_retries,
        )
        logger.info(
            "Retrying stage %s for run %s (attempt %d/%d)",
            stage.id,
            run.id,
            retries + 1,
            self.max_stage_retries,
        )
        return stage.id

    def status(self, run_id: str, *, event_limit: int = 20) -> dict[str, Any]:
        """Snapshot of a run. ``events`` comes from this process's event bus only."""
        run = self._require_run(run_id)
        total = len(self.registry)
        parsed = parse_state(run.state)
        if run.state == COMPLETED:
            current_stage, completed = COMPLETED, total
        elif parsed is not None and parsed[0] in self.registry:
            current_stage = parsed[0]
            completed = self.registry.index(parsed[0]) + (1 if parsed[1] == DONE else 0)
        else:
            current_stage, completed = "UNKNOWN", 0
        events = self.events.history(run_id)[-event_limit:] if event_limit > 0 else []
        return {
            "run": run.to_dict(),
            "current_stage": current_stage,
            "progress": {"completed_stages": completed, "total_stages": total},
            "gates": [record.to_dict() for record in self.repository.list_gates(run_id)],
            "artifacts": sorted(self.repository.latest_artifacts(run_id)),
            "events": [event.to_dict() for event in events],
        }
