"""Internet radio broadcasting random songs of a Jellyfin collection."""

__version__ = "0.1.0"
