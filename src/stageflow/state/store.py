from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class StateError(RuntimeError):
    """Raised when shared-state operations fail."""


class StateStore:
    """Namespaced JSON envelopes with optimistic revision checks.

    ``local`` mode writes one file per namespace under ``<root>/state``;
    ``memory`` mode keeps envelopes in process and is meant for tests and
    throwaway runs.
    """

    NAMESPACES = {"runs", "artifacts", "gates"}
    SCHEMA_VERSION = 1

    def __init__(self, root: Path | None = None, *, backend_mode: str = "local") -> None:
        if backend_mode not in {"local", "memory"}:
            raise StateError(f"Unsupported state backend mode: {backend_mode}")
        if backend_mode == "local" and root is None:
            raise StateError("Local state backend requires a root directory.")
        self._backend_mode = backend_mode
        self._memory: dict[str, str] = {}
        self.root = root.resolve() if root is not None else None
        self.local_state_dir: Path | None = None
        self.lock_file: Path | None = None
        if self.root is not None and backend_mode == "local":
            self.local_state_dir = self.root / "state"
            self.local_state_dir.mkdir(parents=True, exist_ok=True)
            self.lock_file = self.local_state_dir / ".lock"

    @classmethod
    def in_memory(cls) -> StateStore:
        return cls(backend_mode="memory")

    @property
    def backend_mode(self) -> str:
        return self._backend_mode

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _local_file(self, namespace: str) -> Path:
        assert self.local_state_dir is not None
        return self.local_state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        if self.lock_file is None:
            yield
            return
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        if self._backend_mode == "memory":
            content = self._memory.get(namespace)
        else:
            local_file = self._local_file(namespace)
            if not local_file.exists():
                return None
            content = local_file.read_text(encoding="utf-8")
        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            # Never treat an unreadable namespace as empty; the next write would erase it.
            raise StateError(f"State namespace '{namespace}' is not valid JSON: {exc}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        if self._backend_mode == "memory":
            self._memory[namespace] = serialized
            return
        local_file = self._local_file(namespace)
        temp_file = local_file.with_suffix(".json.tmp")
        temp_file.write_text(serialized, encoding="utf-8")
        os.replace(temp_file, local_file)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")
