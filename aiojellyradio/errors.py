"""Exceptions raised by aiojellyradio."""

from __future__ import annotations


class RadioError(Exception):
    """Base class for all aiojellyradio errors."""


class StartupConfigError(RadioError):
    """
    Configuration or environment is unusable at startup.

    This is the only error class that is expected to stop the process.
    """


# Catalog errors


class CatalogError(RadioError):
    """Base class for errors reported by the catalog."""


class CatalogTransientError(CatalogError):
    """A single catalog call failed, retrying it later may succeed."""


class CatalogUnreachableError(CatalogTransientError):
    """The catalog server could not be reached or answered with a server error."""


class CatalogAuthError(CatalogError):
    """The catalog rejected the configured API key."""


class CatalogEmptyError(CatalogError):
    """The catalog has no playable tracks."""


class CollectionNotFoundError(CatalogError):
    """The configured collection does not exist in the catalog."""


class TrackNotFoundError(CatalogError):
    """The requested track does not exist (anymore)."""


# Encoder errors


class EncodeError(RadioError):
    """A track could not be turned into the broadcast format."""


class DecodeFailedError(EncodeError):
    """The source audio could not be decoded."""


class EncoderUnavailableError(EncodeError):
    """The encoder backend is not installed or lacks the required codec."""


# Listener errors


class ListenerIOError(RadioError):
    """Writing to a listener failed or the listener fell too far behind."""
