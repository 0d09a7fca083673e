"""Represents a single HTTP listener connected to the radio."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from contextlib import suppress

from aiohttp import web

from aiojellyradio.errors import ListenerIOError

from .stream import BroadcastMultiplexer

logger = logging.getLogger(__name__)

DEFAULT_LISTENER_BACKLOG = 64
"""Default number of chunks a listener may fall behind before it is dropped."""
IDLE_CHECK_INTERVAL_S = 5.0
"""How often an idle writer checks whether the connection is still open."""

_listener_ids = itertools.count(1)


class ListenerSession:
    """
    One connected listener.

    The multiplexer hands chunks to send_chunk(), which only enqueues them.
    A writer task drains the queue into the HTTP response. When the listener
    cannot keep up and the queue fills, the session is dropped instead of
    slowing down the broadcast.
    """

    _multiplexer: BroadcastMultiplexer
    _request: web.Request
    _response: web.StreamResponse
    _to_write: asyncio.Queue[bytes]
    """Backlog of chunks waiting to be written to the connection."""
    _writer_task: asyncio.Task[None] | None = None
    """Task writing the backlog to the connection."""
    _closing: bool = False
    _close_reason: ListenerIOError | None = None
    """Why the session was torn down by the server, None for a normal disconnect."""
    _on_close: Callable[[ListenerSession], None] | None
    _bytes_sent: int = 0
    _logger: logging.Logger

    def __init__(
        self,
        multiplexer: BroadcastMultiplexer,
        request: web.Request,
        *,
        backlog: int = DEFAULT_LISTENER_BACKLOG,
        on_close: Callable[[ListenerSession], None] | None = None,
    ) -> None:
        """
        Create a session for an incoming request.

        Args:
            multiplexer: Broadcast to attach to.
            request: The HTTP request of the listener.
            backlog: Number of chunks the listener may fall behind before it is dropped.
            on_close: Called once when the session ends.
        """
        if backlog < 1:
            raise ValueError("backlog must be at least 1")
        self._listener_id = f"listener-{next(_listener_ids)}"
        self._multiplexer = multiplexer
        self._request = request
        self._response = web.StreamResponse()
        self._to_write = asyncio.Queue(maxsize=backlog)
        self._on_close = on_close
        self._logger = logger.getChild(self._listener_id)

    @property
    def listener_id(self) -> str:
        """Identifier of this session, unique within the process."""
        return self._listener_id

    @property
    def remote(self) -> str | None:
        """Remote address of the listener."""
        return self._request.remote

    @property
    def closing(self) -> bool:
        """Whether the session is shutting down."""
        return self._closing

    @property
    def close_reason(self) -> ListenerIOError | None:
        """Error that caused the server to drop this listener, if any."""
        return self._close_reason

    @property
    def backlog(self) -> int:
        """Number of chunks waiting to be written."""
        return self._to_write.qsize()

    @property
    def bytes_sent(self) -> int:
        """Bytes written to the listener so far."""
        return self._bytes_sent

    def send_chunk(self, chunk: bytes) -> None:
        """Enqueue a chunk for the listener, dropping the listener if it is too slow."""
        if self._closing:
            return
        try:
            self._to_write.put_nowait(chunk)
        except asyncio.QueueFull:
            self._logger.error("Listener backlog full, listener too slow - disconnecting")
            self._drop(ListenerIOError(f"Backlog of {self._to_write.maxsize} chunks exceeded"))

    def _drop(self, reason: ListenerIOError) -> None:
        """Tear down the session because of an error on its side."""
        if self._closing:
            return
        self._close_reason = reason
        self._closing = True
        self._multiplexer.detach(self)
        if self._writer_task is not None and not self._writer_task.done():
            self._writer_task.cancel()
        if (transport := self._request.transport) is not None:
            transport.close()

    async def disconnect(self) -> None:
        """Disconnect the listener, e.g. on server shutdown."""
        if self._closing and self._writer_task is None:
            return
        self._closing = True
        self._multiplexer.detach(self)
        if self._writer_task and not self._writer_task.done():
            self._logger.debug("Cancelling writer task")
            self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task

    async def handle(self) -> web.StreamResponse:
        """
        Serve the listener until it disconnects or is dropped.

        This method should only be called by RadioServer during request handling.
        """
        stream_format = self._multiplexer.stream_format
        response = self._response
        response.content_type = stream_format.content_type
        response.headers["Cache-Control"] = "no-cache, no-store"
        response.enable_chunked_encoding()

        try:
            await response.prepare(self._request)
        except ConnectionError:
            self._logger.debug("Listener went away before the stream started")
            self._closing = True
            self._close()
            return response

        # Attach only after headers went out, from here on every released chunk is ours
        self._multiplexer.attach(self)
        self._logger.info("Listener connected from %s", self.remote)
        self._writer_task = asyncio.get_running_loop().create_task(self._writer())
        try:
            await self._writer_task
        except asyncio.CancelledError:
            self._logger.debug("Writer task was cancelled")
            if (task := asyncio.current_task()) is not None and task.cancelling():
                raise
        finally:
            self._closing = True
            self._multiplexer.detach(self)
            self._close()
        return response

    def _close(self) -> None:
        self._logger.info(
            "Listener disconnected after %d bytes%s",
            self._bytes_sent,
            f" ({self._close_reason})" if self._close_reason else "",
        )
        if self._on_close is not None:
            on_close, self._on_close = self._on_close, None
            try:
                on_close(self)
            except Exception:
                self._logger.exception("Error in close callback")

    def _transport_closed(self) -> bool:
        transport = self._request.transport
        return transport is None or transport.is_closing()

    async def _writer(self) -> None:
        """Write queued chunks to the connection."""
        try:
            while not self._closing:
                try:
                    async with asyncio.timeout(IDLE_CHECK_INTERVAL_S):
                        chunk = await self._to_write.get()
                except TimeoutError:
                    # Nothing broadcast for a while, reap dead connections anyway
                    if self._transport_closed():
                        self._logger.debug("Connection closed while idle, ending writer task")
                        break
                    continue
                try:
                    await self._response.write(chunk)
                except ConnectionError:
                    self._logger.debug("Connection error writing chunk, ending writer task")
                    break
                self._bytes_sent += len(chunk)
        except Exception:
            self._logger.exception("Error in writer task for listener")
