"""Time announcements played between tracks at fixed local times."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Iterable
from datetime import datetime, time, timedelta
from pathlib import Path

from aiojellyradio.errors import EncodeError
from aiojellyradio.models.track import Track

from .encoder import TrackEncoder, encode_into
from .stream import BroadcastMultiplexer, EncodedBuffer

logger = logging.getLogger(__name__)


def parse_announcement_time(path: Path) -> time | None:
    """
    Return the local time a file announces, from a name like "14_30_voice2.mp3".

    Returns None if the name does not start with an hour and a minute.
    """
    parts = path.stem.split("_")
    if len(parts) < 2:
        return None
    try:
        return time(hour=int(parts[0]), minute=int(parts[1]))
    except ValueError:
        return None


def load_time_map(folder: Path) -> dict[time, list[Path]]:
    """Group the announcement files of a folder by the time they announce."""
    time_map: dict[time, list[Path]] = {}
    for path in sorted(folder.iterdir()):
        if path.is_dir():
            continue
        if (announced := parse_announcement_time(path)) is None:
            logger.debug("Ignoring %s, name is not HH_MM[_suffix]", path.name)
            continue
        time_map.setdefault(announced, []).append(path)
    return time_map


def next_occurrence(times: Iterable[time], now: datetime) -> datetime | None:
    """
    Return the first moment after now matching one of the times.

    That is the earliest later time today, or the earliest time tomorrow.
    """
    ordered = sorted(times)
    if not ordered:
        return None
    for candidate in ordered:
        if candidate > now.time():
            return datetime.combine(now.date(), candidate, tzinfo=now.tzinfo)
    return datetime.combine(now.date() + timedelta(days=1), ordered[0], tzinfo=now.tzinfo)


def _local_now() -> datetime:
    return datetime.now().astimezone()


class InterstitialScheduler:
    """Queues a time announcement on the multiplexer whenever one is due."""

    def __init__(
        self,
        *,
        folder: Path,
        encoder: TrackEncoder,
        multiplexer: BroadcastMultiplexer,
        rng: random.Random | None = None,
        now: Callable[[], datetime] = _local_now,
    ) -> None:
        """
        Create a scheduler for the announcements in a folder.

        Args:
            folder: Folder holding the HH_MM[_suffix].<ext> announcement files.
            encoder: Encoder turning the files into the broadcast format.
            multiplexer: Multiplexer to hand the encoded announcements to.
            rng: Random source picking among files for the same time.
            now: Source of the current local time.
        """
        self._folder = folder
        self._encoder = encoder
        self._multiplexer = multiplexer
        self._rng = rng or random.Random()
        self._now = now

    async def run(self) -> None:
        """Announce the time until cancelled."""
        time_map = await asyncio.to_thread(load_time_map, self._folder)
        if not time_map:
            logger.warning("No time announcements found in %s", self._folder)
            return
        logger.info(
            "Loaded %d time announcement(s) for %d time(s)",
            sum(len(paths) for paths in time_map.values()),
            len(time_map),
        )

        last_announced: datetime | None = None
        while True:
            now = self._now()
            if last_announced is not None and now < last_announced:
                # Woke up a hair early, do not announce the same time twice
                now = last_announced
            due = next_occurrence(time_map, now)
            assert due is not None
            logger.debug("Next time announcement at %s", due.isoformat(timespec="minutes"))
            await asyncio.sleep(max(0.0, (due - self._now()).total_seconds()))
            last_announced = due
            await self.announce(self._rng.choice(time_map[due.time()]))

    async def announce(self, path: Path) -> bool:
        """
        Encode an announcement file and play it at the next track boundary.

        Returns False if the file could not be read or encoded.
        """
        buffer = EncodedBuffer(Track(track_id=f"interstitial:{path.name}", title=path.stem))
        try:
            data = await asyncio.to_thread(path.read_bytes)
            await encode_into(self._encoder, data, buffer)
        except (OSError, EncodeError) as err:
            logger.warning("Skipping time announcement %s: %s", path.name, err)
            return False
        logger.info("Queued time announcement %s", path.name)
        self._multiplexer.queue_interstitial(buffer)
        return True
