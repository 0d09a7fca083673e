"""Models for the Jellyfin radio."""

from __future__ import annotations

__all__ = [
    "BroadcastState",
    "JellyfinAudio",
    "JellyfinAudioList",
    "JellyfinUser",
    "JellyfinUserPolicy",
    "JellyfinView",
    "JellyfinViewList",
    "Track",
    "jellyfin",
    "track",
    "types",
]

from . import jellyfin, track, types
from .jellyfin import (
    JellyfinAudio,
    JellyfinAudioList,
    JellyfinUser,
    JellyfinUserPolicy,
    JellyfinView,
    JellyfinViewList,
)
from .track import Track
from .types import BroadcastState
