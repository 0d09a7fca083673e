"""Command-line interface for running the radio."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from contextlib import suppress
from pathlib import Path

from aiohttp import ClientSession, ClientTimeout

from aiojellyradio.catalog import JellyfinCatalog, JellyfinClient
from aiojellyradio.config import LOG_LEVELS, RadioConfig, configure_logging
from aiojellyradio.errors import StartupConfigError
from aiojellyradio.server import BroadcastEngine, Mp3Encoder, RadioServer, StreamFormat

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments, every flag overrides its environment variable."""
    parser = argparse.ArgumentParser(
        description="Broadcast random songs of a Jellyfin collection as an internet radio stream"
    )
    parser.add_argument("--jellyfin-url", dest="jellyfin_url", help="Jellyfin base URL (JELLYFIN_URL)")
    parser.add_argument(
        "--jellyfin-api-key", dest="jellyfin_api_key", help="Jellyfin API key (JELLYFIN_API_KEY)"
    )
    parser.add_argument(
        "--collection-name",
        dest="collection_name",
        help="Collection to play from (JELLYFIN_COLLECTION_NAME)",
    )
    parser.add_argument("--host", help="Address to listen on (HOST, default 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (PORT, default 3000)")
    parser.add_argument(
        "--prefetch-depth",
        dest="prefetch_depth",
        type=int,
        help="Songs kept ready ahead of the playing one (SONG_PREFETCH, default 2)",
    )
    parser.add_argument(
        "--history-size",
        dest="history_size",
        type=int,
        help="Recent songs not to repeat (HISTORY_SIZE, default 10)",
    )
    parser.add_argument(
        "--listener-backlog",
        dest="listener_backlog",
        type=int,
        help="Chunks a listener may fall behind before it is dropped (LISTENER_BACKLOG, default 64)",
    )
    parser.add_argument(
        "--bitrate",
        dest="bitrate_kbps",
        type=int,
        help="MP3 bitrate in kbit/s (BITRATE_KBPS, default 320)",
    )
    parser.add_argument(
        "--fetch-attempts",
        dest="fetch_attempts",
        type=int,
        help="Download attempts per song before it is skipped (FETCH_ATTEMPTS, default 3)",
    )
    parser.add_argument(
        "--catalog-refresh",
        dest="catalog_refresh_s",
        type=float,
        help="Seconds between catalog refreshes (CATALOG_REFRESH_SECONDS, default 300)",
    )
    parser.add_argument(
        "--interstitials-dir",
        dest="interstitials_dir",
        type=Path,
        help="Folder with HH_MM time announcements (INTERSTITIALS_DIR)",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=LOG_LEVELS,
        help="Logging level to use (LOG_LEVEL, default INFO)",
    )
    return parser.parse_args(argv)


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous CLI workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    try:
        config = RadioConfig.from_env(overrides=vars(args))
    except StartupConfigError as err:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", err)  # noqa: TRY400
        return 1
    configure_logging(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    async with ClientSession(timeout=ClientTimeout(total=120)) as session:
        catalog = JellyfinCatalog(
            JellyfinClient(config.jellyfin_url, config.jellyfin_api_key, session),
            config.collection_name,
        )
        stream_format = StreamFormat(bitrate_kbps=config.bitrate_kbps)
        engine = BroadcastEngine(
            loop,
            catalog,
            Mp3Encoder(stream_format, loop=loop),
            stream_format=stream_format,
            prefetch_depth=config.prefetch_depth,
            history_size=config.history_size,
            fetch_attempts=config.fetch_attempts,
            catalog_refresh_s=config.catalog_refresh_s,
            interstitials_dir=config.interstitials_dir,
        )
        try:
            await engine.start()
        except StartupConfigError as err:
            logger.error("Startup failed: %s", err)  # noqa: TRY400
            return 1

        server = RadioServer(
            loop, engine.multiplexer, listener_backlog=config.listener_backlog
        )
        try:
            try:
                await server.start_server(port=config.port, host=config.host)
            except OSError:
                return 1

            def signal_handler() -> None:
                logger.debug("Received shutdown signal, shutting down...")
                stop_event.set()

            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, signal_handler)
            try:
                await stop_event.wait()
            finally:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    with suppress(NotImplementedError):
                        loop.remove_signal_handler(sig)
            logger.info("Shutting down")
        finally:
            await server.close()
            await engine.stop()

    return 0


def main() -> int:
    """Run the radio."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
