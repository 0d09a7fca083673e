"""Interface between the broadcast engine and a remote music catalog."""

from __future__ import annotations

from typing import Protocol

from aiojellyradio.models.track import Track


class Catalog(Protocol):
    """
    A remote music library the radio plays from.

    Implementations raise subclasses of CatalogError:
    - connect: CatalogAuthError, CollectionNotFoundError or CatalogUnreachableError.
    - list_tracks: CatalogUnreachableError, CatalogAuthError or CatalogEmptyError.
    - open_audio: TrackNotFoundError or CatalogUnreachableError.
    """

    async def connect(self) -> None:
        """Validate the configuration against the remote library, called once at startup."""
        ...

    async def list_tracks(self) -> list[Track]:
        """Return all playable tracks of the catalog."""
        ...

    async def open_audio(self, track_id: str) -> bytes:
        """Return the raw (still encoded in its source format) audio of a track."""
        ...
