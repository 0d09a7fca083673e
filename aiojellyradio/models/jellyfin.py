"""
Jellyfin REST API response models.

Only the fields the radio needs are modelled, everything else in the
responses is ignored while parsing. Jellyfin uses PascalCase keys, which are
mapped to snake_case attributes through aliases.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias

from .track import Track

# Jellyfin durations are expressed in 100ns ticks
TICKS_PER_SECOND = 10_000_000


class _JellyfinConfig(BaseConfig):
    """Config for parsing Jellyfin json responses."""

    serialize_by_alias = True
    omit_none = True


@dataclass
class JellyfinUserPolicy(DataClassORJSONMixin):
    """Permissions of a Jellyfin user."""

    is_administrator: Annotated[bool, Alias("IsAdministrator")] = False
    """Whether the user may see every library on the server."""

    class Config(_JellyfinConfig):
        """Config for parsing json messages."""


@dataclass
class JellyfinUser(DataClassORJSONMixin):
    """A Jellyfin user account."""

    id: Annotated[str, Alias("Id")]
    name: Annotated[str, Alias("Name")]
    policy: Annotated[JellyfinUserPolicy, Alias("Policy")] = field(
        default_factory=JellyfinUserPolicy
    )

    class Config(_JellyfinConfig):
        """Config for parsing json messages."""


@dataclass
class JellyfinView(DataClassORJSONMixin):
    """A top level library view (collection) visible to a user."""

    id: Annotated[str, Alias("Id")]
    name: Annotated[str, Alias("Name")]
    collection_type: Annotated[str | None, Alias("CollectionType")] = None
    """Kind of library, e.g. 'music'. None for mixed folders."""

    class Config(_JellyfinConfig):
        """Config for parsing json messages."""


@dataclass
class JellyfinAudio(DataClassORJSONMixin):
    """An audio item inside a collection."""

    id: Annotated[str, Alias("Id")]
    name: Annotated[str, Alias("Name")]
    artists: Annotated[list[str], Alias("Artists")] = field(default_factory=list)
    run_time_ticks: Annotated[int | None, Alias("RunTimeTicks")] = None
    """Duration in 100ns ticks."""

    class Config(_JellyfinConfig):
        """Config for parsing json messages."""

    def to_track(self) -> Track:
        """Convert to the engine's immutable Track."""
        duration_s = (
            self.run_time_ticks / TICKS_PER_SECOND if self.run_time_ticks is not None else None
        )
        return Track(
            track_id=self.id,
            title=self.name,
            artists=tuple(self.artists),
            duration_s=duration_s,
        )


@dataclass
class JellyfinViewList(DataClassORJSONMixin):
    """Response of /Users/{id}/Views."""

    items: Annotated[list[JellyfinView], Alias("Items")] = field(default_factory=list)

    class Config(_JellyfinConfig):
        """Config for parsing json messages."""


@dataclass
class JellyfinAudioList(DataClassORJSONMixin):
    """One page of /Users/{id}/Items."""

    items: Annotated[list[JellyfinAudio], Alias("Items")] = field(default_factory=list)
    total_record_count: Annotated[int | None, Alias("TotalRecordCount")] = None
    """Total number of matching items across all pages."""

    class Config(_JellyfinConfig):
        """Config for parsing json messages."""
