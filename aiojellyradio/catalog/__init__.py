"""Music catalogs the radio can play from."""

from .base import Catalog
from .jellyfin import JellyfinCatalog, JellyfinClient

__all__ = [
    "Catalog",
    "JellyfinCatalog",
    "JellyfinClient",
]
