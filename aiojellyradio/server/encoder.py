"""Track encoder turning arbitrary source audio into the constant broadcast format."""

from __future__ import annotations

import asyncio
import io
import logging
import threading
import types
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing
from fractions import Fraction
from typing import TYPE_CHECKING, Protocol

from aiojellyradio.errors import DecodeFailedError, EncodeError, EncoderUnavailableError

from .stream import EncodedBuffer, StreamFormat

if TYPE_CHECKING:
    import av

logger = logging.getLogger(__name__)

MP3_ENCODER = "libmp3lame"
MP3_SAMPLE_FORMAT = "s16p"


def _get_av() -> types.ModuleType:
    """Lazy import of av module to avoid slow startup."""
    import av as _av  # noqa: PLC0415

    return _av


class TrackEncoder(Protocol):
    """Turns the raw bytes of a source file into broadcast chunks."""

    def check_available(self) -> None:
        """Raise EncoderUnavailableError if the encoder cannot be used."""
        ...

    def encode(self, data: bytes) -> AsyncGenerator[bytes, None]:
        """
        Yield encoded chunks of the broadcast format.

        Raises:
            DecodeFailedError: If the source audio cannot be decoded.
            EncoderUnavailableError: If the encoder backend is missing.
        """
        ...


class _Rechunker:
    """Cut a byte stream into chunks of a fixed size."""

    def __init__(self, chunk_size: int, emit: Callable[[bytes], None]) -> None:
        self._chunk_size = chunk_size
        self._emit = emit
        self._pending = bytearray()

    def feed(self, data: bytes) -> None:
        self._pending.extend(data)
        while len(self._pending) >= self._chunk_size:
            self._emit(bytes(self._pending[: self._chunk_size]))
            del self._pending[: self._chunk_size]

    def flush(self) -> None:
        if self._pending:
            self._emit(bytes(self._pending))
            self._pending.clear()


class Mp3Encoder:
    """
    Constant bitrate MP3 encoder backed by PyAV.

    Decoding and encoding are CPU bound and run in the default executor, the
    resulting chunks are handed back to the event loop as they are produced.
    libmp3lame emits complete MP3 frames, so the output of consecutive tracks
    can be concatenated into one valid stream.
    """

    def __init__(
        self,
        stream_format: StreamFormat,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """
        Create an encoder for the given output format.

        Args:
            stream_format: Constant output format of the broadcast.
            loop: Event loop to deliver chunks to, defaults to the running loop.
        """
        self._stream_format = stream_format
        self._loop = loop

    @property
    def stream_format(self) -> StreamFormat:
        """Output format of this encoder."""
        return self._stream_format

    def check_available(self) -> None:
        """
        Verify that PyAV and the MP3 encoder can be loaded.

        Raises:
            EncoderUnavailableError: If av or libmp3lame is not available.
        """
        try:
            av = _get_av()
        except ImportError as err:
            raise EncoderUnavailableError("PyAV (av) is not installed") from err
        try:
            av.codec.Codec(MP3_ENCODER, "w")
        except (ValueError, av.error.FFmpegError) as err:
            raise EncoderUnavailableError(
                f"FFmpeg build used by PyAV has no {MP3_ENCODER} encoder"
            ) from err

    async def encode(self, data: bytes) -> AsyncGenerator[bytes, None]:
        """Yield fixed-size MP3 chunks for the given source file contents."""
        loop = self._loop or asyncio.get_running_loop()
        queue: asyncio.Queue[bytes | BaseException | None] = asyncio.Queue()
        cancelled = threading.Event()

        def _put(item: bytes | BaseException | None) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, item)

        def _work() -> None:
            try:
                self._encode_blocking(data, _put, cancelled)
            except BaseException as err:  # noqa: BLE001
                _put(err)
            else:
                _put(None)

        future = loop.run_in_executor(None, _work)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            cancelled.set()
            await asyncio.shield(future)

    def _encode_blocking(
        self,
        data: bytes,
        emit: Callable[[bytes], None],
        cancelled: threading.Event,
    ) -> None:
        """Decode, resample and encode a whole file, runs in a worker thread."""
        av = _get_av()
        fmt = self._stream_format
        rechunker = _Rechunker(fmt.chunk_size, emit)

        try:
            container = av.open(io.BytesIO(data), mode="r")
        except (ValueError, av.error.FFmpegError) as err:
            raise DecodeFailedError(f"Cannot open source audio: {err}") from err

        with container:
            if not container.streams.audio:
                raise DecodeFailedError("Source has no audio stream")
            source = container.streams.audio[0]
            encoder = self._build_encoder()
            resampler = av.AudioResampler(
                format=MP3_SAMPLE_FORMAT,
                layout=fmt.layout,
                rate=fmt.sample_rate,
            )
            fifo = av.AudioFifo()
            frame_size = encoder.frame_size or 1152
            samples_encoded = 0

            def _encode_frame(frame: av.AudioFrame | None) -> None:
                nonlocal samples_encoded
                if frame is not None:
                    frame.pts = samples_encoded
                    frame.time_base = Fraction(1, fmt.sample_rate)
                    samples_encoded += frame.samples
                for packet in encoder.encode(frame):
                    rechunker.feed(bytes(packet))

            def _drain_fifo(*, final: bool) -> None:
                while fifo.samples >= frame_size:
                    _encode_frame(fifo.read(frame_size))
                if final and fifo.samples:
                    _encode_frame(fifo.read())

            try:
                for decoded in container.decode(source):
                    if cancelled.is_set():
                        return
                    for resampled in resampler.resample(decoded):
                        resampled.pts = None
                        fifo.write(resampled)
                    _drain_fifo(final=False)
                for resampled in resampler.resample(None):
                    resampled.pts = None
                    fifo.write(resampled)
                _drain_fifo(final=True)
                _encode_frame(None)
            except (ValueError, av.error.FFmpegError) as err:
                raise DecodeFailedError(f"Decoding source audio failed: {err}") from err

        rechunker.flush()
        if samples_encoded == 0:
            raise DecodeFailedError("Source audio contained no samples")

    def _build_encoder(self) -> av.AudioCodecContext:
        """Create and open the MP3 encoder for the output format."""
        av = _get_av()
        fmt = self._stream_format
        try:
            encoder: av.AudioCodecContext = av.AudioCodecContext.create(MP3_ENCODER, "w")  # type: ignore[name-defined]
        except (ValueError, av.error.FFmpegError) as err:
            raise EncoderUnavailableError(f"Cannot create {MP3_ENCODER} encoder") from err
        encoder.sample_rate = fmt.sample_rate
        encoder.layout = fmt.layout
        encoder.format = MP3_SAMPLE_FORMAT
        encoder.bit_rate = fmt.bitrate_kbps * 1000

        with av.logging.Capture() as logs:
            encoder.open()
        for log in logs:
            logger.debug("Opening AudioCodecContext log from av: %s", log)
        return encoder


async def encode_into(
    encoder: TrackEncoder,
    data: bytes,
    buffer: EncodedBuffer,
    *,
    on_ready: Callable[[], None] | None = None,
) -> None:
    """
    Encode source audio into a buffer and mark it complete.

    on_ready is called once, when the buffer became playable.

    Raises:
        EncodeError: If encoding failed, the buffer is left incomplete for the caller to handle.
    """
    notified = False
    async with aclosing(encoder.encode(data)) as chunks:
        async for chunk in chunks:
            buffer.append(chunk)
            if not notified and on_ready is not None:
                notified = True
                on_ready()
    if buffer.chunk_count == 0:
        raise EncodeError(f"Encoder produced no audio for {buffer.track.display_name}")
    buffer.mark_complete()
    if on_ready is not None:
        on_ready()
