from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class Run:
    id: str
    state: str
    brief: str = ""
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    retry_counts: dict[str, int] = field(default_factory=dict)
    last_error: str | None = None

    @classmethod
    def new(cls, state: str, brief: str = "") -> Run:
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        return cls(id=run_id, state=state, brief=brief)

    def retries_for(self, stage: str) -> int:
        return int(self.retry_counts.get(stage, 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "brief": self.brief,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "retry_counts": dict(self.retry_counts),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Run | None:
        run_id = payload.get("id")
        state = payload.get("state")
        if not isinstance(run_id, str) or not isinstance(state, str):
            return None
        retry_counts = payload.get("retry_counts")
        return cls(
            id=run_id,
            state=state,
            brief=str(payload.get("brief") or ""),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            retry_counts=(
                {str(key): int(value) for key, value in retry_counts.items()}
                if isinstance(retry_counts, dict)
                else {}
            ),
            last_error=payload.get("last_error"),
        )


@dataclass(slots=True)
class Artifact:
    id: str
    run_id: str
    type: str
    content: str
    source: str = ""
    content_hash: str = ""
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "type": self.type,
            "content": self.content,
            "source": self.source,
            "content_hash": self.content_hash,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Artifact | None:
        required = ("id", "run_id", "type", "content")
        if not all(isinstance(payload.get(key), str) for key in required):
            return None
        return cls(
            id=payload["id"],
            run_id=payload["run_id"],
            type=payload["type"],
            content=payload["content"],
            source=str(payload.get("source") or ""),
            content_hash=str(payload.get("content_hash") or ""),
            created_at=str(payload.get("created_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class GateRecord:
    run_id: str
    gate_id: str
    status: str = "PENDING"
    reason: str = ""
    checked_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "gate_id": self.gate_id,
            "status": self.status,
            "reason": self.reason,
            "checked_at": self.checked_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GateRecord | None:
        if not isinstance(payload.get("run_id"), str) or not isinstance(
            payload.get("gate_id"), str
        ):
            return None
        return cls(
            run_id=payload["run_id"],
            gate_id=payload["gate_id"],
            status=str(payload.get("status") or "PENDING"),
            reason=str(payload.get("reason") or ""),
            checked_at=str(payload.get("checked_at") or utcnow_iso()),
        )
