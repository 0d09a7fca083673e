"""Selection of the next track to broadcast."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Callable, Iterator

from aiojellyradio.catalog.base import Catalog
from aiojellyradio.errors import CatalogAuthError, CatalogEmptyError, CatalogTransientError
from aiojellyradio.models.track import Track

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_S = 300.0


class RecentHistory:
    """
    Ordered set of the most recently selected track ids.

    Holds at most max_size ids, the oldest one is evicted first. Pushing an id
    that is already present moves it to the newest position.
    """

    def __init__(self, max_size: int) -> None:
        """Create an empty history holding at most max_size ids."""
        if max_size < 0:
            raise ValueError("max_size must not be negative")
        self._max_size = max_size
        self._entries: deque[str] = deque()

    def __contains__(self, track_id: object) -> bool:
        return track_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        """Iterate from oldest to newest."""
        return iter(list(self._entries))

    @property
    def max_size(self) -> int:
        """Configured window size (H)."""
        return self._max_size

    def push(self, track_id: str) -> None:
        """Record a selection, evicting the oldest entry when the window is full."""
        if self._max_size == 0:
            return
        if track_id in self._entries:
            self._entries.remove(track_id)
        self._entries.append(track_id)
        while len(self._entries) > self._max_size:
            evicted = self._entries.popleft()
            logger.debug("Evicted %s from recent history", evicted)

    def clear(self) -> None:
        """Forget all entries."""
        self._entries.clear()


class PlaylistScheduler:
    """
    Picks the next track uniformly at random, avoiding recent repeats.

    The catalog's track list is cached and refreshed at most once per refresh
    interval. If a refresh fails transiently (or the API key is rejected) while
    a cached list exists, the stale list keeps being used.
    """

    _tracks: list[Track] | None
    """Cached track list of the catalog."""
    _fetched_at: float | None
    """Monotonic time of the last successful catalog fetch."""
    _skipped: set[str]
    """Track ids that are not selected anymore."""

    def __init__(
        self,
        catalog: Catalog,
        history: RecentHistory,
        *,
        refresh_interval_s: float = DEFAULT_REFRESH_INTERVAL_S,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Create a scheduler.

        Args:
            catalog: Catalog to pick tracks from.
            history: History shared with the rest of the engine.
            refresh_interval_s: Maximum age of the cached track list.
            rng: Random source, mainly for tests.
            clock: Monotonic clock used for the cache age.
        """
        self._catalog = catalog
        self._history = history
        self._refresh_interval_s = refresh_interval_s
        self._rng = rng or random.Random()
        self._clock = clock
        self._tracks = None
        self._fetched_at = None
        self._skipped = set()
        self._refresh_lock = asyncio.Lock()

    @property
    def history(self) -> RecentHistory:
        """History of recently selected tracks."""
        return self._history

    @property
    def skipped(self) -> frozenset[str]:
        """Track ids that are not selected anymore."""
        return frozenset(self._skipped)

    def skip(self, track_id: str) -> None:
        """Stop selecting a track, until every track of the catalog is skipped."""
        if track_id not in self._skipped:
            logger.info("Skipping track %s", track_id)
            self._skipped.add(track_id)

    def _cache_expired(self) -> bool:
        return (
            self._fetched_at is None
            or self._clock() - self._fetched_at >= self._refresh_interval_s
        )

    async def tracks(self) -> list[Track]:
        """
        Return the (cached) track list of the catalog.

        Raises:
            CatalogEmptyError: If the catalog has no tracks.
            CatalogTransientError: If the catalog cannot be reached and nothing is cached.
            CatalogAuthError: If the API key is rejected and nothing is cached.
        """
        async with self._refresh_lock:
            if self._tracks is not None and not self._cache_expired():
                return self._tracks
            try:
                tracks = await self._catalog.list_tracks()
            except (CatalogTransientError, CatalogAuthError) as err:
                if self._tracks is None:
                    raise
                logger.warning("Refreshing catalog failed, using cached track list: %s", err)
                self._fetched_at = self._clock()
                return self._tracks
            if not tracks:
                raise CatalogEmptyError("Catalog has no tracks")
            logger.debug("Catalog refreshed, %d tracks", len(tracks))
            self._tracks = tracks
            self._fetched_at = self._clock()
            return tracks

    async def next_track(self) -> Track:
        """
        Pick the next track and record it in the history.

        Tracks in the recent history are avoided. If that leaves nothing to pick
        from, the whole catalog is used instead. Once every track is skipped the
        skip list is cleared, so the next call tries them all again.

        Raises:
            CatalogEmptyError: If the catalog has no (non-skipped) tracks.
            CatalogTransientError: If the catalog cannot be reached and nothing is cached.
        """
        tracks = await self.tracks()
        playable = [track for track in tracks if track.track_id not in self._skipped]
        if not playable:
            logger.warning(
                "All %d tracks were skipped, giving them another chance", len(self._skipped)
            )
            self._skipped.clear()
            raise CatalogEmptyError("Every track of the catalog was skipped")

        candidates = [track for track in playable if track.track_id not in self._history]
        if not candidates:
            logger.debug(
                "All %d tracks played recently, picking from the whole catalog", len(playable)
            )
            candidates = playable

        track = self._rng.choice(candidates)
        self._history.push(track.track_id)
        logger.debug("Selected %s", track.display_name)
        return track
