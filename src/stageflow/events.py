from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

logger = logging.getLogger(__name__)

EventType = Literal[
    "stage_started",
    "stage_completed",
    "stage_failed",
    "stage_retry",
    "gate_checked",
    "artifact_created",
    "pipeline_completed",
]
EventCallback = Callable[["PipelineEvent"], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class PipelineEvent:
    run_id: str
    type: EventType
    stage: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": self.run_id,
            "type": self.type,
            "timestamp": self.timestamp,
        }
        if self.stage is not None:
            payload["stage"] = self.stage
        if self.data:
            payload["data"] = dict(self.data)
        return payload


class EventChannel:
    """Bounded buffer for one subscriber.

    A full channel drops its oldest event instead of blocking the producer;
    ``dropped`` counts how many events were lost that way.
    """

    def __init__(self, bus: EventBus, run_id: str, maxsize: int) -> None:
        self._bus = bus
        self.run_id = run_id
        self.maxsize = max(1, int(maxsize))
        self.dropped = 0
        self._buffer: deque[PipelineEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def put(self, event: PipelineEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) >= self.maxsize:
            self._buffer.popleft()
            self.dropped += 1
            logger.warning(
                "Event channel for run %s is full; dropped oldest event (%d dropped so far).",
                self.run_id,
                self.dropped,
            )
        self._buffer.append(event)
        self._ready.set()

    def drain(self) -> list[PipelineEvent]:
        events = list(self._buffer)
        self._buffer.clear()
        self._ready.clear()
        return events

    async def get(self) -> PipelineEvent | None:
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._remove_channel(self)
        self._ready.set()

    def __aiter__(self) -> EventChannel:
        return self

    async def __anext__(self) -> PipelineEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    def __init__(self, *, channel_size: int = 100, history_size: int = 200) -> None:
        self.channel_size = channel_size
        self.history_size = history_size
        self._callbacks: dict[str, list[EventCallback]] = {}
        self._channels: dict[str, list[EventChannel]] = {}
        self._history: dict[str, deque[PipelineEvent]] = {}

    def emit(self, event: PipelineEvent) -> None:
        history = self._history.get(event.run_id)
        if history is None:
            history = deque(maxlen=max(1, self.history_size))
            self._history[event.run_id] = history
        history.append(event)

        for channel in list(self._channels.get(event.run_id, [])):
            channel.put(event)
        for callback in list(self._callbacks.get(event.run_id, [])):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Event listener failed for %s on run %s", event.type, event.run_id
                )

    def subscribe(self, run_id: str, callback: EventCallback) -> Callable[[], None]:
        self._callbacks.setdefault(run_id, []).append(callback)

        def _unsubscribe() -> None:
            listeners = self._callbacks.get(run_id, [])
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                self._callbacks.pop(run_id, None)

        return _unsubscribe

    def open_channel(self, run_id: str, maxsize: int | None = None) -> EventChannel:
        channel = EventChannel(self, run_id, maxsize or self.channel_size)
        self._channels.setdefault(run_id, []).append(channel)
        return channel

    def _remove_channel(self, channel: EventChannel) -> None:
        channels = self._channels.get(channel.run_id, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._channels.pop(channel.run_id, None)

    def subscriber_count(self, run_id: str) -> int:
        return len(self._callbacks.get(run_id, [])) + len(self._channels.get(run_id, []))

    def history(self, run_id: str) -> list[PipelineEvent]:
        return list(self._history.get(run_id, ()))
