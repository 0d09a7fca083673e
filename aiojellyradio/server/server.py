"""HTTP server handing out the broadcast to many listeners."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass

from aiohttp import web

from .listener import DEFAULT_LISTENER_BACKLOG, ListenerSession
from .stream import BroadcastMultiplexer

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000
DEFAULT_STREAM_PATH = "/stream"


class RadioServerEvent:
    """Base event type used by RadioServer.add_event_listener()."""


@dataclass
class ListenerAddedEvent(RadioServerEvent):
    """A new listener connected."""

    listener_id: str
    remote: str | None


@dataclass
class ListenerRemovedEvent(RadioServerEvent):
    """A listener disconnected or was dropped."""

    listener_id: str
    dropped: bool
    """Whether the server dropped the listener, e.g. because it was too slow."""


class RadioServer:
    """Serves the broadcast of one multiplexer as a chunked HTTP audio stream."""

    _listeners: set[ListenerSession]
    """All listeners connected to this server."""
    _loop: asyncio.AbstractEventLoop
    _multiplexer: BroadcastMultiplexer
    _event_cbs: list[Callable[[RadioServer, RadioServerEvent], None]]
    _app: web.Application | None
    """Web application instance for the server."""
    _app_runner: web.AppRunner | None
    """App runner for the web application."""
    _tcp_site: web.TCPSite | None
    """TCP site for the web application."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        multiplexer: BroadcastMultiplexer,
        *,
        stream_path: str = DEFAULT_STREAM_PATH,
        listener_backlog: int = DEFAULT_LISTENER_BACKLOG,
    ) -> None:
        """
        Initialize a new radio server.

        Args:
            loop: The asyncio event loop to use for asynchronous operations.
            multiplexer: Broadcast to serve.
            stream_path: URL path of the audio stream.
            listener_backlog: Chunks a listener may fall behind before it is dropped.
        """
        if listener_backlog < 1:
            raise ValueError("listener_backlog must be at least 1")
        self._listeners = set()
        self._loop = loop
        self._multiplexer = multiplexer
        self._stream_path = stream_path
        self._listener_backlog = listener_backlog
        self._event_cbs = []
        self._app = None
        self._app_runner = None
        self._tcp_site = None

    def _create_web_application(self) -> web.Application:
        """
        Create and configure the aiohttp web application.

        Returns:
            Configured aiohttp web.Application instance.
        """
        app = web.Application()
        # HEAD would never finish, the stream has no end
        app.router.add_get(self._stream_path, self.on_listener_connect, allow_head=False)
        if self._stream_path != "/":
            # Players pointed at the bare server address get the stream too
            app.router.add_get("/", self.on_listener_connect, allow_head=False)
        return app

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Read-only access to the event loop used by this server."""
        return self._loop

    @property
    def stream_path(self) -> str:
        """URL path the stream is served on."""
        return self._stream_path

    @property
    def listeners(self) -> set[ListenerSession]:
        """Get the set of all connected listeners."""
        return set(self._listeners)

    @property
    def running(self) -> bool:
        """Whether the HTTP server is listening."""
        return self._tcp_site is not None

    async def on_listener_connect(self, request: web.Request) -> web.StreamResponse:
        """Handle an incoming listener connection."""
        logger.debug("Incoming listener connection from %s", request.remote)
        session = ListenerSession(
            self._multiplexer,
            request,
            backlog=self._listener_backlog,
            on_close=self._handle_listener_close,
        )
        self._listeners.add(session)
        self._signal_event(ListenerAddedEvent(session.listener_id, session.remote))
        return await session.handle()

    def _handle_listener_close(self, session: ListenerSession) -> None:
        """Unregister a listener, called once per session."""
        if session not in self._listeners:
            return
        self._listeners.discard(session)
        logger.debug("Removed %s, %d listener(s) left", session.listener_id, len(self._listeners))
        self._signal_event(
            ListenerRemovedEvent(session.listener_id, dropped=session.close_reason is not None)
        )

    def add_event_listener(
        self, callback: Callable[[RadioServer, RadioServerEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for state changes of the server.

        State changes include:
        - A new listener connected
        - A listener disconnected

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: RadioServerEvent) -> None:
        """Signal an event to all registered listeners."""
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")

    async def start_server(self, port: int = DEFAULT_PORT, host: str = "0.0.0.0") -> None:
        """
        Start serving the stream.

        :param port: The TCP port to bind the server to.
        :param host: The IP address for the server to listen on
            (e.g., "0.0.0.0" for all interfaces).
        :raises OSError: If the port cannot be bound.
        """
        if self._app is not None:
            logger.warning("Server is already running")
            return

        logger.info("Starting radio server on port %d", port)
        self._app = self._create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()

        try:
            self._tcp_site = web.TCPSite(
                self._app_runner,
                host=host if host != "0.0.0.0" else None,
                port=port,
            )
            await self._tcp_site.start()
            logger.info(
                "Radio server listening on http://%s:%d%s", host, port, self._stream_path
            )
        except OSError as e:
            logger.error("Failed to start server on %s:%d: %s", host, port, e)
            self._tcp_site = None
            if self._app_runner:
                await self._app_runner.cleanup()
                self._app_runner = None
            if self._app:
                await self._app.shutdown()
                self._app = None
            raise

    async def stop_server(self) -> None:
        """Stop the HTTP server."""
        if self._tcp_site:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._app:
            await self._app.shutdown()
            self._app = None

    async def close(self) -> None:
        """Disconnect all listeners and stop the server."""
        listeners = list(self._listeners)
        for session in listeners:
            logger.debug("Disconnecting %s", session.listener_id)
        if listeners:
            results = await asyncio.gather(
                *(session.disconnect() for session in listeners), return_exceptions=True
            )
            for session, result in zip(listeners, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning("Error disconnecting %s: %s", session.listener_id, result)

        await self.stop_server()
