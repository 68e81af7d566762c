from stageflow.state.models import Artifact, GateRecord, Run
from stageflow.state.repository import PipelineRepository
from stageflow.state.store import StateError, StateStore

__all__ = ["Artifact", "GateRecord", "PipelineRepository", "Run", "StateError", "StateStore"]
