from __future__ import annotations

import asyncio
import random
import socket
from collections.abc import AsyncGenerator, Sequence

from aiojellyradio.errors import (
    CatalogAuthError,
    CatalogError,
    CatalogUnreachableError,
    DecodeFailedError,
    EncoderUnavailableError,
    TrackNotFoundError,
)
from aiojellyradio.models.track import Track
from aiojellyradio.server.stream import StreamFormat

# 1 MB/s in 10 ms chunks of 10 kB, so pacing tests finish quickly
FAST_FORMAT = StreamFormat(bitrate_kbps=8000, chunk_duration_ms=10)
CHUNKS_PER_TRACK = 3

UNDECODABLE = b"BAD"
"""Payload prefix the fake encoder refuses to decode."""
HALF_DECODABLE = b"HALF"
"""Payload prefix the fake encoder fails on after the first chunk."""


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_tracks(count: int, prefix: str = "track") -> list[Track]:
    return [
        Track(track_id=f"{prefix}-{i}", title=f"Song {i}", artists=("Artist",), duration_s=0.03)
        for i in range(1, count + 1)
    ]


def audio_for(
    track_id: str,
    *,
    chunks: int = CHUNKS_PER_TRACK,
    chunk_size: int = FAST_FORMAT.chunk_size,
) -> bytes:
    """Distinct payload per track, exactly chunks * chunk_size bytes long."""
    pattern = f"{track_id};".encode()
    size = chunks * chunk_size
    return (pattern * (size // len(pattern) + 1))[:size]


class FirstChoice(random.Random):
    """Random source that always picks the first candidate."""

    def choice(self, seq: Sequence) -> object:  # type: ignore[override]
        return seq[0]


class FakeCatalog:
    """In-memory catalog with scriptable failures."""

    def __init__(self, tracks: list[Track], *, chunks_per_track: int = CHUNKS_PER_TRACK) -> None:
        self.tracks = list(tracks)
        self.chunks_per_track = chunks_per_track
        self.connect_error: CatalogError | None = None
        self.list_error: CatalogError | None = None
        self.open_failures: dict[str, int] = {}
        """Remaining transient failures of open_audio per track id."""
        self.auth_failures: dict[str, int] = {}
        """Remaining rejected-key failures of open_audio per track id."""
        self.missing: set[str] = set()
        self.payloads: dict[str, bytes] = {}
        """Payload overrides per track id."""
        self.list_calls = 0
        self.open_calls: list[str] = []

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    async def list_tracks(self) -> list[Track]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.tracks)

    async def open_audio(self, track_id: str) -> bytes:
        self.open_calls.append(track_id)
        await asyncio.sleep(0)
        if remaining := self.open_failures.get(track_id, 0):
            self.open_failures[track_id] = remaining - 1
            raise CatalogUnreachableError(f"connection reset while fetching {track_id}")
        if remaining := self.auth_failures.get(track_id, 0):
            self.auth_failures[track_id] = remaining - 1
            raise CatalogAuthError("Jellyfin rejected the API key (HTTP 401)")
        if track_id in self.missing:
            raise TrackNotFoundError(f"{track_id} not found")
        if track_id in self.payloads:
            return self.payloads[track_id]
        return audio_for(track_id, chunks=self.chunks_per_track)


class FakeEncoder:
    """Passes bytes through, cut into chunks of the stream format."""

    def __init__(
        self,
        stream_format: StreamFormat = FAST_FORMAT,
        *,
        available: bool = True,
        chunk_delay_s: float = 0.0,
    ) -> None:
        self.stream_format = stream_format
        self.available = available
        self.chunk_delay_s = chunk_delay_s
        self.encoded: list[bytes] = []

    def check_available(self) -> None:
        if not self.available:
            raise EncoderUnavailableError("libmp3lame missing")

    async def encode(self, data: bytes) -> AsyncGenerator[bytes, None]:
        if data.startswith(UNDECODABLE):
            raise DecodeFailedError("not an audio file")
        self.encoded.append(data)
        size = self.stream_format.chunk_size
        for index, offset in enumerate(range(0, len(data), size)):
            if index == 1 and data.startswith(HALF_DECODABLE):
                raise DecodeFailedError("corrupt frame")
            if self.chunk_delay_s:
                await asyncio.sleep(self.chunk_delay_s)
            yield data[offset : offset + size]


class RecordingListener:
    """Broadcast listener remembering every chunk and when it arrived."""

    def __init__(self) -> None:
        self.loop = asyncio.get_running_loop()
        self.chunks: list[bytes] = []
        self.times: list[float] = []

    def send_chunk(self, chunk: bytes) -> None:
        self.chunks.append(chunk)
        self.times.append(self.loop.time())

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)
