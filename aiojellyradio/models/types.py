"""Models for enum types used by aiojellyradio."""

from enum import Enum


class BroadcastState(Enum):
    """State of the broadcast multiplexer."""

    AWAITING_FIRST_TRACK = "awaiting_first_track"
    """Initial state, no track has been ready yet."""
    STREAMING = "streaming"
    """A track's encoded buffer is being paced out to listeners."""
    ADVANCING = "advancing"
    """The current track is exhausted and the next one is being popped."""
    IDLE_STARVED = "idle_starved"
    """
    No track is ready to play.

    Listeners stay connected but receive nothing until the prefetch
    pipeline delivers a track.
    """
    STOPPED = "stopped"
    """The engine was shut down."""
