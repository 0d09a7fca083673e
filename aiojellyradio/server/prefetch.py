"""Prefetch pipeline keeping the play queue filled with fetched and encoded tracks."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from aiojellyradio.catalog.base import Catalog
from aiojellyradio.errors import (
    CatalogAuthError,
    CatalogEmptyError,
    CatalogError,
    CatalogTransientError,
    EncodeError,
    TrackNotFoundError,
)

from .encoder import TrackEncoder, encode_into
from .scheduler import PlaylistScheduler
from .stream import EncodedBuffer, PlayQueue

logger = logging.getLogger(__name__)

DEFAULT_FETCH_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_S = 1.0
MAX_RETRY_BACKOFF_S = 30.0

# Failures that will not go away by asking again
_PERMANENT_ERRORS = (TrackNotFoundError, EncodeError)


class PrefetchPipeline:
    """
    Keeps the play queue at its target depth.

    Every queued track is one independent unit of work: download the source
    audio from the catalog and run it through the encoder into the track's
    buffer. At most prefetch_depth units run at the same time.

    A unit retries transient catalog errors (and rejected credentials, which
    may come back after a token rotation) with exponential backoff. When it
    gives up the track is removed from the queue, which makes room for a
    replacement picked by the scheduler. Only tracks that are missing or
    undecodable are skipped by the scheduler. A track that merely ran out of
    attempts may be picked again once the catalog recovers.
    """

    _tasks: set[asyncio.Task[None]]
    """Running fetch/encode units."""
    _failures: dict[str, int]
    """Number of failed units per track id."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        scheduler: PlaylistScheduler,
        catalog: Catalog,
        encoder: TrackEncoder,
        play_queue: PlayQueue,
        fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS,
        retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
        max_retry_backoff_s: float = MAX_RETRY_BACKOFF_S,
    ) -> None:
        """
        Create a pipeline.

        Args:
            loop: The event loop to run fetch/encode tasks on.
            scheduler: Picks the tracks to prefetch.
            catalog: Source of the raw audio.
            encoder: Turns raw audio into broadcast chunks.
            play_queue: Queue to keep filled.
            fetch_attempts: Attempts per track before it is skipped.
            retry_backoff_s: Initial delay between attempts, doubled every retry.
            max_retry_backoff_s: Upper bound for the retry delay.
        """
        if fetch_attempts < 1:
            raise ValueError("fetch_attempts must be at least 1")
        self._loop = loop
        self._scheduler = scheduler
        self._catalog = catalog
        self._encoder = encoder
        self._play_queue = play_queue
        self._fetch_attempts = fetch_attempts
        self._retry_backoff_s = retry_backoff_s
        self._max_retry_backoff_s = max_retry_backoff_s
        self._slots = asyncio.Semaphore(play_queue.depth)
        self._tasks = set()
        self._failures = {}

    @property
    def active_units(self) -> int:
        """Number of tracks currently being fetched or encoded."""
        return len(self._tasks)

    def failures(self, track_id: str) -> int:
        """Return how often prefetching a track failed during this session."""
        return self._failures.get(track_id, 0)

    async def run(self) -> None:
        """Fill the play queue until cancelled."""
        backoff = self._retry_backoff_s
        try:
            while True:
                while self._play_queue.has_room:
                    try:
                        track = await self._scheduler.next_track()
                    except CatalogEmptyError as err:
                        logger.warning("Nothing to schedule: %s", err)
                        break
                    except CatalogError as err:
                        logger.warning("Scheduling next track failed: %s", err)
                        break
                    backoff = self._retry_backoff_s
                    self._schedule(EncodedBuffer(track))
                else:
                    await self._play_queue.wait_for_change()
                    continue

                # Scheduling failed, retry after a backoff
                logger.debug("Retrying scheduling in %.1fs", backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self._max_retry_backoff_s)
        finally:
            await self._cancel_units()

    def _schedule(self, buffer: EncodedBuffer) -> None:
        """Queue a buffer and start its fetch/encode unit."""
        self._play_queue.append(buffer)
        logger.debug(
            "Queued %s (%d/%d)",
            buffer.track.display_name,
            len(self._play_queue),
            self._play_queue.capacity,
        )
        task = self._loop.create_task(self._prefetch(buffer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _prefetch(self, buffer: EncodedBuffer) -> None:
        """Fetch and encode one track, replacing it on failure."""
        track = buffer.track
        error: BaseException | None = None
        try:
            async with self._slots:
                error = await self._fetch_and_encode(buffer)
        except asyncio.CancelledError:
            buffer.mark_failed(asyncio.CancelledError())
            raise
        except Exception as err:
            logger.exception("Unexpected error prefetching %s", track.display_name)
            error = err

        if error is not None:
            self._give_up(buffer, error)

    async def _fetch_and_encode(self, buffer: EncodedBuffer) -> BaseException | None:
        """Run the unit of work, returns the error that made it give up."""
        track = buffer.track
        backoff = self._retry_backoff_s
        for attempt in range(1, self._fetch_attempts + 1):
            try:
                data = await self._catalog.open_audio(track.track_id)
                logger.debug("Fetched %s (%d bytes)", track.display_name, len(data))
                await encode_into(
                    self._encoder, data, buffer, on_ready=self._play_queue.notify
                )
            except (CatalogTransientError, CatalogAuthError) as err:
                logger.warning(
                    "Fetching %s failed (attempt %d/%d): %s",
                    track.display_name,
                    attempt,
                    self._fetch_attempts,
                    err,
                )
                if attempt == self._fetch_attempts:
                    return err
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self._max_retry_backoff_s)
            except (CatalogError, EncodeError) as err:
                logger.warning("Cannot play %s: %s", track.display_name, err)
                return err
            else:
                logger.debug("Prefetched %s", track.display_name)
                return None
        return None

    def _give_up(self, buffer: EncodedBuffer, error: BaseException) -> None:
        """Drop a failed track and make room for a replacement."""
        track = buffer.track
        self._failures[track.track_id] = self._failures.get(track.track_id, 0) + 1
        if isinstance(error, _PERMANENT_ERRORS):
            self._scheduler.skip(track.track_id)
        buffer.mark_failed(error)
        if buffer.started:
            # Already on air, the multiplexer plays what was encoded and moves on
            logger.warning("Truncating %s, it failed while playing", track.display_name)
            self._play_queue.notify()
            return
        self._play_queue.remove(buffer)
        logger.info("Dropped %s from the queue, scheduling a replacement", track.display_name)

    async def _cancel_units(self) -> None:
        """Cancel all running fetch/encode units."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
