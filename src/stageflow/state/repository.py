from __future__ import annotations

from typing import Any
from uuid import uuid4

from stageflow.state.models import Artifact, GateRecord, Run, content_hash, utcnow_iso
from stageflow.state.store import StateStore


class PipelineRepository:
    """Runs, artifacts and gate decisions on top of a ``StateStore``.

    Artifacts are append-only. Gate records are keyed by ``(run_id, gate_id)``
    and overwritten on every check.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    # Runs

    def create_run(self, initial_state: str, brief: str = "") -> Run:
        run = Run.new(initial_state, brief=brief)
        self.save_run(run)
        return run

    def get_run(self, run_id: str) -> Run | None:
        runs = self.store.get_json("runs", default={})
        payload = runs.get(run_id) if isinstance(runs, dict) else None
        if not isinstance(payload, dict):
            return None
        return Run.from_dict(payload)

    def save_run(self, run: Run) -> Run:
        run.updated_at = utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            runs[run.id] = run.to_dict()
            return runs

        self.store.update_json("runs", _updater, default={})
        return run

    def list_runs(self) -> list[Run]:
        runs = self.store.get_json("runs", default={})
        if not isinstance(runs, dict):
            return []
        parsed = [Run.from_dict(item) for item in runs.values() if isinstance(item, dict)]
        return sorted((run for run in parsed if run is not None), key=lambda run: run.created_at)

    # Artifacts

    def create_artifact(self, run_id: str, type: str, content: str, source: str = "") -> Artifact:
        artifact = Artifact(
            id=f"art-{uuid4().hex[:12]}",
            run_id=run_id,
            type=type,
            content=content,
            source=source,
            content_hash=content_hash(content),
        )

        def _updater(payload: Any) -> dict[str, Any]:
            artifacts = payload if isinstance(payload, dict) else {}
            bucket = artifacts.get(run_id)
            if not isinstance(bucket, list):
                bucket = []
            bucket.append(artifact.to_dict())
            artifacts[run_id] = bucket
            return artifacts

        self.store.update_json("artifacts", _updater, default={})
        return artifact

    def list_artifacts(self, run_id: str) -> list[Artifact]:
        artifacts = self.store.get_json("artifacts", default={})
        bucket = artifacts.get(run_id) if isinstance(artifacts, dict) else None
        if not isinstance(bucket, list):
            return []
        parsed = [Artifact.from_dict(item) for item in bucket if isinstance(item, dict)]
        return [artifact for artifact in parsed if artifact is not None]

    def latest_artifacts(self, run_id: str) -> dict[str, Artifact]:
        # Stored in creation order, so later entries supersede earlier ones.
        latest: dict[str, Artifact] = {}
        for artifact in self.list_artifacts(run_id):
            latest[artifact.type] = artifact
        return latest

    # Gates

    def upsert_gate(self, record: GateRecord) -> GateRecord:
        def _updater(payload: Any) -> dict[str, Any]:
            gates = payload if isinstance(payload, dict) else {}
            bucket = gates.get(record.run_id)
            if not isinstance(bucket, dict):
                bucket = {}
            bucket[record.gate_id] = record.to_dict()
            gates[record.run_id] = bucket
            return gates

        self.store.update_json("gates", _updater, default={})
        return record

    def list_gates(self, run_id: str) -> list[GateRecord]:
        gates = self.store.get_json("gates", default={})
        bucket = gates.get(run_id) if isinstance(gates, dict) else None
        if not isinstance(bucket, dict):
            return []
        parsed = [GateRecord.from_dict(item) for item in bucket.values() if isinstance(item, dict)]
        return [record for record in parsed if record is not None]
