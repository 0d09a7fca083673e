"""High-level broadcast primitives: encoded buffers, the play queue and the paced multiplexer."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol

from aiojellyradio.models.track import Track
from aiojellyradio.models.types import BroadcastState

logger = logging.getLogger(__name__)

# Valid MPEG-1 Layer III constant bitrates
MP3_BITRATES_KBPS = frozenset({32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320})

DEFAULT_STARVATION_POLL_S = 1.0
"""How often a starved multiplexer re-checks the play queue without a notification."""
DEFAULT_MAX_LAG_S = 0.25
"""Lag behind the broadcast clock after which the clock is re-anchored instead of caught up."""


@dataclass(frozen=True)
class StreamFormat:
    """Constant output format of the broadcast."""

    bitrate_kbps: int = 320
    """Constant bitrate in kbit/s."""
    sample_rate: int = 48_000
    """Sample rate in Hz."""
    channels: int = 2
    """Number of audio channels (1 for mono, 2 for stereo)."""
    chunk_duration_ms: int = 100
    """Playback duration of one broadcast chunk."""
    codec: str = "mp3"
    """Output codec name."""
    content_type: str = "audio/mpeg"
    """HTTP content type of the stream."""

    @property
    def bytes_per_second(self) -> int:
        """Bytes the stream consumes per second of playback."""
        return self.bitrate_kbps * 1000 // 8

    @property
    def chunk_size(self) -> int:
        """Size in bytes of one broadcast chunk."""
        return max(1, self.bytes_per_second * self.chunk_duration_ms // 1000)

    @property
    def layout(self) -> str:
        """Channel layout name understood by FFmpeg."""
        return "mono" if self.channels == 1 else "stereo"


class EncodedBuffer:
    """
    Append-only buffer of encoded chunks for one track.

    Written by exactly one producer (the prefetch pipeline) and read by the
    multiplexer through chunk indexes. Chunks are immutable bytes, so readers
    can hand them on to listeners without copying.
    """

    track: Track
    started: bool
    """Whether the multiplexer started broadcasting this buffer."""
    _chunks: list[bytes]
    _total_bytes: int
    _complete: bool
    _error: BaseException | None
    _released: bool
    _changed: asyncio.Event

    def __init__(self, track: Track) -> None:
        """Create an empty buffer for a track."""
        self.track = track
        self.started = False
        self._chunks = []
        self._total_bytes = 0
        self._complete = False
        self._error = None
        self._released = False
        self._changed = asyncio.Event()

    def __repr__(self) -> str:
        return (
            f"EncodedBuffer({self.track.display_name!r}, chunks={len(self._chunks)}, "
            f"complete={self._complete})"
        )

    def _notify(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    @property
    def chunk_count(self) -> int:
        """Number of chunks written so far."""
        return len(self._chunks)

    @property
    def total_bytes(self) -> int:
        """Number of bytes written so far."""
        return self._total_bytes

    @property
    def complete(self) -> bool:
        """Whether the writer finished (successfully or not)."""
        return self._complete

    @property
    def error(self) -> BaseException | None:
        """Error that ended the buffer early, if any."""
        return self._error

    @property
    def ready(self) -> bool:
        """Whether the buffer can start playing."""
        return bool(self._chunks) or self._complete

    def append(self, chunk: bytes) -> None:
        """Append an encoded chunk."""
        if self._complete:
            raise RuntimeError(f"Cannot append to completed buffer of {self.track.display_name}")
        if not chunk:
            return
        self._chunks.append(chunk)
        self._total_bytes += len(chunk)
        self._notify()

    def mark_complete(self) -> None:
        """Signal that no more chunks will be appended."""
        if self._complete:
            return
        self._complete = True
        self._notify()

    def mark_failed(self, error: BaseException) -> None:
        """Signal that the writer gave up, keeping what was written so far."""
        self._error = error
        self.mark_complete()

    def chunk_at(self, index: int) -> bytes | None:
        """Return the chunk at index, or None if it was not written (yet)."""
        if self._released:
            raise RuntimeError(f"Buffer of {self.track.display_name} was already released")
        if index < len(self._chunks):
            return self._chunks[index]
        return None

    async def wait_for_chunk(self, index: int) -> None:
        """Wait until the chunk at index was written or the buffer is complete."""
        while index >= len(self._chunks) and not self._complete:
            await self._changed.wait()

    def release(self) -> None:
        """Drop all chunk references once the track was retired."""
        self._chunks.clear()
        self._released = True


class PlayQueue:
    """
    Ordered lookahead of tracks, from now playing (index 0) to prefetched.

    The prefetch pipeline appends (and removes failed entries that did not
    start playing), the multiplexer removes the head once it was broadcast.
    Every mutation wakes up waiters of wait_for_change().
    """

    def __init__(self, prefetch_depth: int) -> None:
        """
        Create an empty queue.

        Args:
            prefetch_depth: Number of tracks kept ready ahead of the playing one.
        """
        if prefetch_depth < 1:
            raise ValueError("prefetch_depth must be at least 1")
        self._depth = prefetch_depth
        self._entries: deque[EncodedBuffer] = deque()
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[EncodedBuffer]:
        return iter(list(self._entries))

    def __contains__(self, buffer: object) -> bool:
        return buffer in self._entries

    @property
    def depth(self) -> int:
        """Configured prefetch depth (K)."""
        return self._depth

    @property
    def capacity(self) -> int:
        """Maximum number of entries, the playing track plus depth prefetched ones."""
        return self._depth + 1

    @property
    def has_room(self) -> bool:
        """Whether another track may be appended."""
        return len(self._entries) < self.capacity

    @property
    def head(self) -> EncodedBuffer | None:
        """Entry that is playing or will play next."""
        return self._entries[0] if self._entries else None

    def append(self, buffer: EncodedBuffer) -> None:
        """Append a buffer to the end of the queue."""
        if not self.has_room:
            raise RuntimeError(f"PlayQueue is full ({self.capacity} entries)")
        self._entries.append(buffer)
        self.notify()

    def remove(self, buffer: EncodedBuffer) -> bool:
        """Remove a buffer, returns False if it was not queued."""
        try:
            self._entries.remove(buffer)
        except ValueError:
            return False
        self.notify()
        return True

    def pop_head(self) -> EncodedBuffer:
        """Remove and return the head of the queue."""
        buffer = self._entries.popleft()
        self.notify()
        return buffer

    def notify(self) -> None:
        """Wake up everybody waiting for a change of the queue or its entries."""
        self._changed.set()
        self._changed = asyncio.Event()

    async def wait_for_change(self, timeout: float | None = None) -> None:
        """Wait for the next notify(), at most timeout seconds."""
        event = self._changed
        with suppress(TimeoutError):
            async with asyncio.timeout(timeout):
                await event.wait()


class BroadcastClock:
    """
    Maps the byte offset of the broadcast to event loop time.

    A chunk starting at byte offset N is due at origin + N / bytes_per_second.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, bytes_per_second: int) -> None:
        """Create an unanchored clock."""
        self._loop = loop
        self._bytes_per_second = bytes_per_second
        self._origin: float | None = None
        self._bytes = 0

    @property
    def anchored(self) -> bool:
        """Whether anchor() was called."""
        return self._origin is not None

    @property
    def elapsed_s(self) -> float:
        """Playback time of all bytes released since the last anchor."""
        return self._bytes / self._bytes_per_second

    def anchor(self) -> None:
        """Start counting from the current loop time."""
        self._origin = self._loop.time()
        self._bytes = 0

    def due_time(self) -> float:
        """Loop time at which the next byte is due."""
        if self._origin is None:
            raise RuntimeError("BroadcastClock is not anchored")
        return self._origin + self.elapsed_s

    def lag(self) -> float:
        """Seconds the broadcast is behind real time (negative when ahead)."""
        return self._loop.time() - self.due_time()

    def advance(self, byte_count: int) -> None:
        """Account for released bytes."""
        self._bytes += byte_count

    def hold(self, seconds: float) -> None:
        """Shift the clock forward, so nothing is fast-forwarded after a stall."""
        if self._origin is None:
            raise RuntimeError("BroadcastClock is not anchored")
        self._origin += seconds


class BroadcastListener(Protocol):
    """Receiver of broadcast chunks, implemented by ListenerSession."""

    def send_chunk(self, chunk: bytes) -> None:
        """Queue a chunk for delivery, must never block."""
        ...


class BroadcastEvent:
    """Base event type used by BroadcastMultiplexer.add_event_listener()."""


@dataclass
class BroadcastStateChangedEvent(BroadcastEvent):
    """The multiplexer changed its state."""

    state: BroadcastState


@dataclass
class TrackStartedEvent(BroadcastEvent):
    """A track started playing."""

    track: Track
    interstitial: bool = False


@dataclass
class TrackFinishedEvent(BroadcastEvent):
    """A track was fully broadcast."""

    track: Track
    bytes_sent: int
    interstitial: bool = False


class BroadcastMultiplexer:
    """
    Owns the live timeline of the radio.

    Takes the head of the PlayQueue, releases its chunks at the rate implied
    by the stream bitrate and copies every released chunk to all attached
    listeners. Listeners only ever get chunks released after they attached,
    so everybody hears the same position.
    """

    _loop: asyncio.AbstractEventLoop
    _play_queue: PlayQueue
    _stream_format: StreamFormat
    _clock: BroadcastClock
    _state: BroadcastState
    _listeners: set[BroadcastListener]
    """Listeners receiving released chunks."""
    _interstitials: deque[tuple[EncodedBuffer, float]]
    """Buffers (and the loop time they were queued at) to play at the next track boundary."""
    _now_playing: EncodedBuffer | None
    _track_bytes: int
    """Bytes of the current track released so far."""
    _bytes_released: int
    """Bytes released since the broadcast started."""
    _event_cbs: list[Callable[[BroadcastMultiplexer, BroadcastEvent], None]]

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        play_queue: PlayQueue,
        stream_format: StreamFormat,
        starvation_poll_s: float = DEFAULT_STARVATION_POLL_S,
        max_lag_s: float = DEFAULT_MAX_LAG_S,
    ) -> None:
        """
        Create a multiplexer draining the given play queue.

        Args:
            loop: The event loop for timing and task scheduling.
            play_queue: Queue filled by the prefetch pipeline.
            stream_format: Constant output format, used for the pacing math.
            starvation_poll_s: Re-check interval while no track is ready.
            max_lag_s: Lag behind real time after which the clock is re-anchored.
        """
        self._loop = loop
        self._play_queue = play_queue
        self._stream_format = stream_format
        self._clock = BroadcastClock(loop, stream_format.bytes_per_second)
        self._starvation_poll_s = starvation_poll_s
        self._max_lag_s = max_lag_s
        self._state = BroadcastState.AWAITING_FIRST_TRACK
        self._listeners = set()
        self._interstitials = deque()
        self._now_playing = None
        self._track_bytes = 0
        self._bytes_released = 0
        self._event_cbs = []

    @property
    def state(self) -> BroadcastState:
        """Current state of the broadcast."""
        return self._state

    @property
    def stream_format(self) -> StreamFormat:
        """Output format of the broadcast."""
        return self._stream_format

    @property
    def play_queue(self) -> PlayQueue:
        """Queue this multiplexer plays from."""
        return self._play_queue

    @property
    def now_playing(self) -> Track | None:
        """Track currently being broadcast."""
        return self._now_playing.track if self._now_playing is not None else None

    @property
    def position_s(self) -> float:
        """Broadcast position within the current track, in seconds."""
        return self._track_bytes / self._stream_format.bytes_per_second

    @property
    def bytes_released(self) -> int:
        """Total bytes released to listeners since start."""
        return self._bytes_released

    @property
    def listeners(self) -> set[BroadcastListener]:
        """Currently attached listeners."""
        return set(self._listeners)

    def attach(self, listener: BroadcastListener) -> None:
        """Start delivering chunks to a listener from the current broadcast position."""
        self._listeners.add(listener)
        logger.debug("Listener attached, %d listener(s) now", len(self._listeners))

    def detach(self, listener: BroadcastListener) -> None:
        """Stop delivering chunks to a listener."""
        if listener not in self._listeners:
            return
        self._listeners.discard(listener)
        logger.debug("Listener detached, %d listener(s) left", len(self._listeners))

    def queue_interstitial(self, buffer: EncodedBuffer) -> None:
        """Play a buffer at the next track boundary, ahead of the play queue."""
        self._interstitials.append((buffer, self._loop.time()))
        self._play_queue.notify()

    def add_event_listener(
        self, callback: Callable[[BroadcastMultiplexer, BroadcastEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for broadcast events.

        Events include:
        - The state changed
        - A track started or finished playing

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: BroadcastEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")

    def _set_state(self, state: BroadcastState) -> None:
        if state is self._state:
            return
        logger.debug("Broadcast state %s -> %s", self._state.value, state.value)
        self._state = state
        self._signal_event(BroadcastStateChangedEvent(state))

    async def run(self) -> None:
        """Run the pacing loop until cancelled."""
        self._set_state(BroadcastState.AWAITING_FIRST_TRACK)
        try:
            while True:
                buffer, interstitial = await self._next_buffer()
                await self._broadcast(buffer, interstitial=interstitial)
                self._retire(buffer, interstitial=interstitial)
        finally:
            self._now_playing = None
            self._set_state(BroadcastState.STOPPED)

    async def _next_buffer(self) -> tuple[EncodedBuffer, bool]:
        """Wait for the next playable buffer, returns (buffer, is_interstitial)."""
        while True:
            if self._interstitials and self._interstitials[0][0].ready:
                buffer, queued_at = self._interstitials.popleft()
                logger.info(
                    "Playing %s %.1fs after it was queued",
                    buffer.track.display_name,
                    self._loop.time() - queued_at,
                )
                return buffer, True
            head = self._play_queue.head
            if head is not None and head.ready:
                return head, False
            if self._state is BroadcastState.ADVANCING:
                logger.warning("No track ready to play, broadcast is starved")
                self._set_state(BroadcastState.IDLE_STARVED)
            await self._play_queue.wait_for_change(self._starvation_poll_s)

    async def _broadcast(self, buffer: EncodedBuffer, *, interstitial: bool) -> None:
        """Release all chunks of a buffer at real-time pace."""
        if self._state is not BroadcastState.ADVANCING or not self._clock.anchored:
            # First track, or coming back from starvation: start the clock now
            self._clock.anchor()
        buffer.started = True
        self._now_playing = buffer
        self._track_bytes = 0
        self._set_state(BroadcastState.STREAMING)
        logger.info("Now playing: %s", buffer.track.display_name)
        self._signal_event(TrackStartedEvent(buffer.track, interstitial=interstitial))

        index = 0
        while True:
            chunk = buffer.chunk_at(index)
            if chunk is None:
                if buffer.complete:
                    return
                logger.debug("Encoder is behind real time for %s", buffer.track.display_name)
                await buffer.wait_for_chunk(index)
                continue

            lag = self._clock.lag()
            if lag > self._max_lag_s:
                # Never fast-forward, late bytes are released now and the clock moves on
                logger.debug("Broadcast is %.3fs behind, re-anchoring clock", lag)
                self._clock.hold(lag)
            elif lag < 0:
                await asyncio.sleep(-lag)

            self._publish(chunk)
            self._clock.advance(len(chunk))
            self._track_bytes += len(chunk)
            self._bytes_released += len(chunk)
            index += 1

    def _publish(self, chunk: bytes) -> None:
        """Copy a chunk to every attached listener without blocking."""
        for listener in list(self._listeners):
            try:
                listener.send_chunk(chunk)
            except Exception:
                logger.exception("Error delivering chunk, detaching listener")
                self.detach(listener)

    def _retire(self, buffer: EncodedBuffer, *, interstitial: bool) -> None:
        """Drop a fully broadcast buffer and move on."""
        self._set_state(BroadcastState.ADVANCING)
        if not interstitial:
            self._play_queue.remove(buffer)
        if buffer.error is not None:
            logger.warning(
                "Track %s ended early: %s", buffer.track.display_name, buffer.error
            )
        self._signal_event(
            TrackFinishedEvent(buffer.track, self._track_bytes, interstitial=interstitial)
        )
        self._now_playing = None
        buffer.release()
