"""Track model shared by the catalog and the broadcast engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Track:
    """One playable song and the reference needed to fetch its audio."""

    track_id: str
    """Catalog identifier, passed back to Catalog.open_audio()."""
    title: str
    """Song title."""
    artists: tuple[str, ...] = ()
    """Performing artists, in catalog order."""
    duration_s: float | None = None
    """Duration estimate in seconds, None if the catalog does not know it."""

    @property
    def display_name(self) -> str:
        """Return a human readable 'Artists - Title' string."""
        if not self.artists:
            return self.title
        return f"{', '.join(self.artists)} - {self.title}"
