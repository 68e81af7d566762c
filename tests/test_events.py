import asyncio
import logging

import pytest

from stageflow.events import EventBus, PipelineEvent


def _event(run_id: str, index: int) -> PipelineEvent:
    return PipelineEvent(run_id=run_id, type="stage_started", stage="PM", data={"n": index})


def test_callbacks_receive_only_their_run() -> None:
    bus = EventBus()
    seen: list[PipelineEvent] = []
    unsubscribe = bus.subscribe("run-a", seen.append)

    bus.emit(_event("run-a", 1))
    bus.emit(_event("run-b", 2))
    unsubscribe()
    bus.emit(_event("run-a", 3))

    assert [event.data["n"] for event in seen] == [1]
    assert bus.subscriber_count("run-a") == 0


def test_failing_listener_does_not_break_emit(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    seen: list[PipelineEvent] = []

    def _boom(event: PipelineEvent) -> None:
        raise ValueError("listener bug")

    bus.subscribe("run-a", _boom)
    bus.subscribe("run-a", seen.append)

    with caplog.at_level(logging.ERROR, logger="stageflow.events"):
        bus.emit(_event("run-a", 1))

    assert len(seen) == 1
    assert "Event listener failed" in caplog.text


def test_channel_drops_oldest_when_full() -> None:
    bus = EventBus(channel_size=3)
    channel = bus.open_channel("run-a")

    for index in range(5):
        bus.emit(_event("run-a", index))

    assert channel.dropped == 2
    assert [event.data["n"] for event in channel.drain()] == [2, 3, 4]
    assert len(channel) == 0


def test_channel_async_iteration_ends_after_close() -> None:
    bus = EventBus()

    async def _main() -> list[int]:
        channel = bus.open_channel("run-a")
        received: list[int] = []

        async def _consume() -> None:
            async for event in channel:
                received.append(event.data["n"])

        consumer = asyncio.create_task(_consume())
        for index in range(3):
            bus.emit(_event("run-a", index))
            await asyncio.sleep(0)
        channel.close()
        await asyncio.wait_for(consumer, timeout=1.0)
        return received

    assert asyncio.run(_main()) == [0, 1, 2]
    assert bus.subscriber_count("run-a") == 0


def test_history_is_bounded_per_run() -> None:
    bus = EventBus(history_size=2)
    for index in range(4):
        bus.emit(_event("run-a", index))
    bus.emit(_event("run-b", 9))

    assert [event.data["n"] for event in bus.history("run-a")] == [2, 3]
    assert len(bus.history("run-b")) == 1
    assert bus.history("run-c") == []


def test_event_to_dict_omits_empty_fields() -> None:
    payload = PipelineEvent(run_id="run-a", type="pipeline_completed").to_dict()

    assert payload["type"] == "pipeline_completed"
    assert "stage" not in payload
    assert "data" not in payload
