from __future__ import annotations

import random

import pytest
from conftest import FakeCatalog, make_tracks

from aiojellyradio.errors import CatalogAuthError, CatalogEmptyError, CatalogUnreachableError
from aiojellyradio.server.scheduler import PlaylistScheduler, RecentHistory


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_history_evicts_oldest_first() -> None:
    history = RecentHistory(2)
    for track_id in ("a", "b", "c"):
        history.push(track_id)

    assert list(history) == ["b", "c"]
    assert "a" not in history
    assert len(history) == 2


def test_history_push_existing_moves_to_newest() -> None:
    history = RecentHistory(3)
    for track_id in ("a", "b", "a", "c", "d"):
        history.push(track_id)

    assert list(history) == ["a", "c", "d"]


def test_history_never_exceeds_max_size() -> None:
    history = RecentHistory(4)
    rng = random.Random(7)
    for _ in range(200):
        history.push(str(rng.randrange(20)))
        assert len(history) <= history.max_size


def test_history_of_size_zero_stays_empty() -> None:
    history = RecentHistory(0)
    history.push("a")
    assert len(history) == 0
    assert "a" not in history


def test_history_rejects_negative_size() -> None:
    with pytest.raises(ValueError):
        RecentHistory(-1)


@pytest.mark.asyncio
async def test_next_track_avoids_recent_history() -> None:
    for seed in range(10):
        scheduler = PlaylistScheduler(
            FakeCatalog(make_tracks(6)), RecentHistory(3), rng=random.Random(seed)
        )
        for _ in range(50):
            recent = set(scheduler.history)
            track = await scheduler.next_track()
            assert track.track_id not in recent


@pytest.mark.asyncio
async def test_three_tracks_with_window_of_two_rotate() -> None:
    scheduler = PlaylistScheduler(
        FakeCatalog(make_tracks(3)), RecentHistory(2), rng=random.Random(42)
    )
    picks = [(await scheduler.next_track()).track_id for _ in range(5)]

    for previous, current in zip(picks, picks[1:], strict=False):
        assert previous != current
    for i, track_id in enumerate(picks):
        if track_id in picks[i + 1 :]:
            j = picks.index(track_id, i + 1)
            assert len(set(picks[i + 1 : j])) >= 2


@pytest.mark.asyncio
async def test_falls_back_to_whole_catalog_when_everything_is_recent() -> None:
    scheduler = PlaylistScheduler(
        FakeCatalog(make_tracks(2)), RecentHistory(5), rng=random.Random(1)
    )
    first = await scheduler.next_track()
    second = await scheduler.next_track()
    third = await scheduler.next_track()

    assert first != second
    assert third in (first, second)


@pytest.mark.asyncio
async def test_track_list_is_cached_until_refresh_interval() -> None:
    catalog = FakeCatalog(make_tracks(3))
    clock = FakeClock()
    scheduler = PlaylistScheduler(
        catalog, RecentHistory(1), refresh_interval_s=60, clock=clock
    )

    await scheduler.next_track()
    await scheduler.next_track()
    assert catalog.list_calls == 1

    clock.now = 61
    catalog.tracks = make_tracks(1, prefix="new")
    assert (await scheduler.next_track()).track_id == "new-1"
    assert catalog.list_calls == 2


@pytest.mark.asyncio
async def test_stale_cache_used_when_refresh_fails() -> None:
    catalog = FakeCatalog(make_tracks(3))
    clock = FakeClock()
    scheduler = PlaylistScheduler(catalog, RecentHistory(0), refresh_interval_s=10, clock=clock)
    await scheduler.tracks()

    catalog.list_error = CatalogUnreachableError("down")
    clock.now = 20
    track = await scheduler.next_track()

    assert track in make_tracks(3)
    assert catalog.list_calls == 2
    # The failed refresh counts as a refresh, no hammering of a dead server
    await scheduler.next_track()
    assert catalog.list_calls == 2


@pytest.mark.asyncio
async def test_stale_cache_used_when_key_is_rejected() -> None:
    catalog = FakeCatalog(make_tracks(3))
    clock = FakeClock()
    scheduler = PlaylistScheduler(catalog, RecentHistory(0), refresh_interval_s=10, clock=clock)
    await scheduler.tracks()

    catalog.list_error = CatalogAuthError("Jellyfin rejected the API key (HTTP 401)")
    clock.now = 20

    assert await scheduler.tracks() == make_tracks(3)
    assert catalog.list_calls == 2


@pytest.mark.asyncio
async def test_unreachable_catalog_without_cache_raises() -> None:
    catalog = FakeCatalog(make_tracks(3))
    catalog.list_error = CatalogUnreachableError("down")
    scheduler = PlaylistScheduler(catalog, RecentHistory(1))

    with pytest.raises(CatalogUnreachableError):
        await scheduler.next_track()


@pytest.mark.asyncio
async def test_empty_catalog_raises() -> None:
    scheduler = PlaylistScheduler(FakeCatalog([]), RecentHistory(1))

    with pytest.raises(CatalogEmptyError):
        await scheduler.next_track()


@pytest.mark.asyncio
async def test_skipped_tracks_are_never_selected() -> None:
    tracks = make_tracks(3)
    scheduler = PlaylistScheduler(FakeCatalog(tracks), RecentHistory(0), rng=random.Random(3))
    scheduler.skip("track-2")

    picks = {(await scheduler.next_track()).track_id for _ in range(30)}

    assert picks == {"track-1", "track-3"}
    assert scheduler.skipped == frozenset({"track-2"})


@pytest.mark.asyncio
async def test_all_tracks_skipped_raises() -> None:
    scheduler = PlaylistScheduler(FakeCatalog(make_tracks(2)), RecentHistory(1))
    scheduler.skip("track-1")
    scheduler.skip("track-2")

    with pytest.raises(CatalogEmptyError):
        await scheduler.next_track()
    # Everything gets another chance on the next pick
    assert not scheduler.skipped
    assert (await scheduler.next_track()).track_id in {"track-1", "track-2"}
