from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from conftest import FAST_FORMAT, FakeCatalog, FakeEncoder, FirstChoice, RecordingListener, audio_for, make_tracks

from aiojellyradio.errors import (
    CatalogAuthError,
    CatalogUnreachableError,
    CollectionNotFoundError,
    StartupConfigError,
)
from aiojellyradio.models.types import BroadcastState
from aiojellyradio.server.engine import BroadcastEngine
from aiojellyradio.server.stream import (
    BroadcastEvent,
    BroadcastMultiplexer,
    BroadcastStateChangedEvent,
    TrackFinishedEvent,
    TrackStartedEvent,
)


def _engine(catalog: FakeCatalog, **kwargs) -> BroadcastEngine:
    kwargs.setdefault("encoder", FakeEncoder())
    return BroadcastEngine(
        asyncio.get_running_loop(),
        catalog,
        stream_format=FAST_FORMAT,
        retry_backoff_s=0.001,
        starvation_poll_s=0.01,
        **kwargs,
    )


class Timeline:
    """Collects broadcast events of an engine."""

    def __init__(self, engine: BroadcastEngine) -> None:
        self.states: list[BroadcastState] = []
        self.started: list[str] = []
        self.finished: list[str] = []
        engine.multiplexer.add_event_listener(self._on_event)

    def _on_event(self, _multiplexer: BroadcastMultiplexer, event: BroadcastEvent) -> None:
        if isinstance(event, BroadcastStateChangedEvent):
            self.states.append(event.state)
        elif isinstance(event, TrackStartedEvent):
            self.started.append(event.track.track_id)
        elif isinstance(event, TrackFinishedEvent):
            self.finished.append(event.track.track_id)

    async def wait_finished(self, count: int, timeout: float = 5) -> None:
        async with asyncio.timeout(timeout):
            while len(self.finished) < count:
                await asyncio.sleep(0.001)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        CatalogAuthError("bad key"),
        CollectionNotFoundError("no such collection"),
        CatalogUnreachableError("connection refused"),
    ],
)
async def test_start_fails_fast_on_catalog_errors(error: Exception) -> None:
    catalog = FakeCatalog(make_tracks(3))
    catalog.connect_error = error
    engine = _engine(catalog)

    with pytest.raises(StartupConfigError):
        await engine.start()
    assert not engine.running


@pytest.mark.asyncio
async def test_start_fails_on_empty_collection() -> None:
    engine = _engine(FakeCatalog([]))

    with pytest.raises(StartupConfigError):
        await engine.start()


@pytest.mark.asyncio
async def test_start_fails_without_encoder() -> None:
    engine = _engine(FakeCatalog(make_tracks(3)), encoder=FakeEncoder(available=False))

    with pytest.raises(StartupConfigError):
        await engine.start()


@pytest.mark.asyncio
async def test_start_fails_on_missing_interstitials_folder(tmp_path: Path) -> None:
    engine = _engine(FakeCatalog(make_tracks(3)), interstitials_dir=tmp_path / "missing")

    with pytest.raises(StartupConfigError):
        await engine.start()


@pytest.mark.asyncio
async def test_continuous_stream_across_tracks() -> None:
    engine = _engine(FakeCatalog(make_tracks(4)), prefetch_depth=2, history_size=1)
    timeline = Timeline(engine)
    listener = RecordingListener()
    engine.multiplexer.attach(listener)

    await engine.start()
    try:
        await timeline.wait_finished(4)
    finally:
        await engine.stop()

    played = timeline.started[:4]
    expected = b"".join(audio_for(track_id) for track_id in played)
    assert listener.data[: len(expected)] == expected
    assert BroadcastState.IDLE_STARVED not in timeline.states
    for previous, current in zip(played, played[1:], strict=False):
        assert previous != current
    gaps = [b - a for a, b in zip(listener.times, listener.times[1:], strict=False)]
    assert max(gaps) < 0.05
    assert engine.state is BroadcastState.STOPPED
    assert not engine.running


@pytest.mark.asyncio
async def test_failing_track_is_replaced_without_starving() -> None:
    catalog = FakeCatalog(make_tracks(5))
    catalog.open_failures["track-3"] = 3
    engine = _engine(catalog, prefetch_depth=2, history_size=10, rng=FirstChoice())
    timeline = Timeline(engine)

    await engine.start()
    try:
        await timeline.wait_finished(4)
    finally:
        await engine.stop()

    assert timeline.started[:4] == ["track-1", "track-2", "track-4", "track-5"]
    assert catalog.open_calls.count("track-3") == 3
    assert engine.pipeline.failures("track-3") == 1
    assert "track-3" not in engine.scheduler.skipped
    assert BroadcastState.IDLE_STARVED not in timeline.states


@pytest.mark.asyncio
async def test_play_queue_stays_within_bounds() -> None:
    engine = _engine(FakeCatalog(make_tracks(4)), prefetch_depth=2, history_size=1)
    timeline = Timeline(engine)
    await engine.start()

    sizes = []
    try:
        async with asyncio.timeout(5):
            while len(timeline.finished) < 3:
                if timeline.started:
                    sizes.append(len(engine.play_queue))
                await asyncio.sleep(0.002)
    finally:
        await engine.stop()

    assert sizes
    assert min(sizes) >= 1
    assert max(sizes) <= 3


@pytest.mark.asyncio
async def test_start_twice_is_a_noop() -> None:
    catalog = FakeCatalog(make_tracks(3))
    engine = _engine(catalog)
    await engine.start()
    try:
        await engine.start()
        assert catalog.list_calls == 1
        assert engine.running
    finally:
        await engine.stop()
