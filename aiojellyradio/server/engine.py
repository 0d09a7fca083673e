"""Broadcast engine wiring scheduler, prefetch pipeline and multiplexer together."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from aiojellyradio.catalog.base import Catalog
from aiojellyradio.errors import CatalogError, EncoderUnavailableError, StartupConfigError
from aiojellyradio.models.track import Track
from aiojellyradio.models.types import BroadcastState

from .encoder import TrackEncoder
from .interstitials import InterstitialScheduler
from .prefetch import DEFAULT_FETCH_ATTEMPTS, DEFAULT_RETRY_BACKOFF_S, PrefetchPipeline
from .scheduler import DEFAULT_REFRESH_INTERVAL_S, PlaylistScheduler, RecentHistory
from .stream import (
    DEFAULT_STARVATION_POLL_S,
    BroadcastEvent,
    BroadcastMultiplexer,
    PlayQueue,
    StreamFormat,
    TrackFinishedEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_PREFETCH_DEPTH = 2
DEFAULT_HISTORY_SIZE = 10


class BroadcastEngine:
    """
    The radio without its HTTP surface.

    Owns the play queue and the long-running tasks: the multiplexer pacing
    the broadcast, the prefetch pipeline filling the queue and, when a folder
    is configured, the time announcements.
    """

    _tasks: dict[str, asyncio.Task[None]]
    """Running engine tasks by name."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        catalog: Catalog,
        encoder: TrackEncoder,
        *,
        stream_format: StreamFormat | None = None,
        prefetch_depth: int = DEFAULT_PREFETCH_DEPTH,
        history_size: int = DEFAULT_HISTORY_SIZE,
        fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS,
        retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
        catalog_refresh_s: float = DEFAULT_REFRESH_INTERVAL_S,
        starvation_poll_s: float = DEFAULT_STARVATION_POLL_S,
        interstitials_dir: Path | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Create the engine, nothing runs until start() is called.

        Args:
            loop: The asyncio event loop to run the engine tasks on.
            catalog: Music library to play from.
            encoder: Encoder producing the broadcast format.
            stream_format: Constant output format, defaults to 320 kbit/s MP3.
            prefetch_depth: Tracks kept ready ahead of the playing one (K).
            history_size: Number of recent tracks not to repeat (H).
            fetch_attempts: Attempts per track before it is skipped.
            retry_backoff_s: Initial delay between attempts.
            catalog_refresh_s: Maximum age of the cached track list.
            starvation_poll_s: Re-check interval of a starved broadcast.
            interstitials_dir: Folder with time announcements, None to disable them.
            rng: Random source for track and announcement selection.
        """
        self._loop = loop
        self._catalog = catalog
        self._encoder = encoder
        self._stream_format = stream_format or StreamFormat()
        self._interstitials_dir = interstitials_dir
        self._play_queue = PlayQueue(prefetch_depth)
        self._scheduler = PlaylistScheduler(
            catalog,
            RecentHistory(history_size),
            refresh_interval_s=catalog_refresh_s,
            rng=rng,
        )
        self._multiplexer = BroadcastMultiplexer(
            loop=loop,
            play_queue=self._play_queue,
            stream_format=self._stream_format,
            starvation_poll_s=starvation_poll_s,
        )
        self._pipeline = PrefetchPipeline(
            loop=loop,
            scheduler=self._scheduler,
            catalog=catalog,
            encoder=encoder,
            play_queue=self._play_queue,
            fetch_attempts=fetch_attempts,
            retry_backoff_s=retry_backoff_s,
        )
        self._interstitials: InterstitialScheduler | None = None
        if interstitials_dir is not None:
            self._interstitials = InterstitialScheduler(
                folder=interstitials_dir,
                encoder=encoder,
                multiplexer=self._multiplexer,
                rng=rng,
            )
        self._tasks = {}
        self._multiplexer.add_event_listener(self._on_broadcast_event)

    @property
    def state(self) -> BroadcastState:
        """Current state of the broadcast."""
        return self._multiplexer.state

    @property
    def now_playing(self) -> Track | None:
        """Track currently on air."""
        return self._multiplexer.now_playing

    @property
    def stream_format(self) -> StreamFormat:
        """Output format of the broadcast."""
        return self._stream_format

    @property
    def multiplexer(self) -> BroadcastMultiplexer:
        """Multiplexer listeners attach to."""
        return self._multiplexer

    @property
    def play_queue(self) -> PlayQueue:
        """Queue of playing and prefetched tracks."""
        return self._play_queue

    @property
    def scheduler(self) -> PlaylistScheduler:
        """Scheduler picking the tracks."""
        return self._scheduler

    @property
    def pipeline(self) -> PrefetchPipeline:
        """Pipeline prefetching the tracks."""
        return self._pipeline

    @property
    def running(self) -> bool:
        """Whether start() was called and stop() was not."""
        return bool(self._tasks)

    async def start(self) -> None:
        """
        Validate the catalog and the encoder, then start broadcasting.

        Raises:
            StartupConfigError: If the catalog or the encoder cannot be used.
        """
        if self._tasks:
            logger.warning("Broadcast engine is already running")
            return

        if self._interstitials_dir is not None and not self._interstitials_dir.is_dir():
            raise StartupConfigError(
                f"Interstitials folder {self._interstitials_dir} is not a directory"
            )
        try:
            self._encoder.check_available()
            await self._catalog.connect()
            tracks = await self._scheduler.tracks()
        except (CatalogError, EncoderUnavailableError) as err:
            logger.error("Cannot start broadcast: %s", err)
            raise StartupConfigError(str(err)) from err
        logger.info(
            "Starting broadcast of %d tracks, prefetching %d",
            len(tracks),
            self._play_queue.depth,
        )

        self._start_task("multiplexer", self._multiplexer.run())
        self._start_task("prefetch", self._pipeline.run())
        if self._interstitials is not None:
            self._start_task("interstitials", self._interstitials.run())

    def _start_task(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        task = self._loop.create_task(coro, name=f"aiojellyradio-{name}")
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._on_task_done(name, t))

    def _on_task_done(self, name: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.error("Engine task %s failed", name, exc_info=exc)
        else:
            logger.debug("Engine task %s finished", name)

    async def stop(self) -> None:
        """Stop all engine tasks and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Unhandled exception while stopping engine task")
        self._tasks.clear()
        logger.info("Broadcast engine stopped")

    def _on_broadcast_event(self, _multiplexer: BroadcastMultiplexer, event: BroadcastEvent) -> None:
        if isinstance(event, TrackFinishedEvent) and not event.interstitial:
            logger.debug(
                "Finished %s after %.1fs",
                event.track.display_name,
                event.bytes_sent / self._stream_format.bytes_per_second,
            )
