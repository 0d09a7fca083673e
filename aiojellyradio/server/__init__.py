"""Public interface for the radio server package."""

from .encoder import Mp3Encoder, TrackEncoder, encode_into
from .engine import BroadcastEngine
from .interstitials import InterstitialScheduler
from .listener import ListenerSession
from .prefetch import PrefetchPipeline
from .scheduler import PlaylistScheduler, RecentHistory
from .server import ListenerAddedEvent, ListenerRemovedEvent, RadioServer, RadioServerEvent
from .stream import (
    BroadcastClock,
    BroadcastEvent,
    BroadcastListener,
    BroadcastMultiplexer,
    BroadcastStateChangedEvent,
    EncodedBuffer,
    PlayQueue,
    StreamFormat,
    TrackFinishedEvent,
    TrackStartedEvent,
)

__all__ = [
    "BroadcastClock",
    "BroadcastEngine",
    "BroadcastEvent",
    "BroadcastListener",
    "BroadcastMultiplexer",
    "BroadcastStateChangedEvent",
    "EncodedBuffer",
    "InterstitialScheduler",
    "ListenerAddedEvent",
    "ListenerRemovedEvent",
    "ListenerSession",
    "Mp3Encoder",
    "PlayQueue",
    "PlaylistScheduler",
    "PrefetchPipeline",
    "RadioServer",
    "RadioServerEvent",
    "RecentHistory",
    "StreamFormat",
    "TrackEncoder",
    "TrackFinishedEvent",
    "TrackStartedEvent",
    "encode_into",
]
