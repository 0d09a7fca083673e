"""Jellyfin implementation of the radio catalog."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import orjson
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout

from aiojellyradio.errors import (
    CatalogAuthError,
    CatalogEmptyError,
    CatalogError,
    CatalogUnreachableError,
    CollectionNotFoundError,
    TrackNotFoundError,
)
from aiojellyradio.models.jellyfin import (
    JellyfinAudio,
    JellyfinAudioList,
    JellyfinUser,
    JellyfinView,
    JellyfinViewList,
)
from aiojellyradio.models.track import Track

logger = logging.getLogger(__name__)

AUDIO_PAGE_SIZE = 500

# Large lossless files on slow links take a while, only a stalled transfer is an error
DOWNLOAD_TIMEOUT = ClientTimeout(total=None, sock_connect=30, sock_read=60)

# Query used to list every real audio file below a collection
_AUDIO_ITEM_QUERY: dict[str, str] = {
    "Filters": "IsNotFolder",
    "Recursive": "true",
    "MediaTypes": "Audio",
    "ExcludeLocationTypes": "Virtual",
    "CollapseBoxSetItems": "false",
    "SortBy": "SortName",
}


class JellyfinClient:
    """Thin async wrapper around the parts of the Jellyfin REST API the radio uses."""

    _base_url: str
    _api_key: str
    _client_session: ClientSession
    _owns_session: bool
    """Whether this client created (and therefore has to close) the session."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client_session: ClientSession | None = None,
    ) -> None:
        """
        Initialize a new Jellyfin client.

        Args:
            base_url: Base URL of the Jellyfin server, e.g. "http://jellyfin:8096".
            api_key: API key created in the Jellyfin dashboard.
            client_session: Optional ClientSession to use for requests.
                If None, a new session will be created.
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        if client_session is None:
            self._client_session = ClientSession(timeout=ClientTimeout(total=120))
            self._owns_session = True
        else:
            self._client_session = client_session
            self._owns_session = False

    @property
    def base_url(self) -> str:
        """Base URL of the Jellyfin server."""
        return self._base_url

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f'MediaBrowser Token="{self._api_key}"'}

    @asynccontextmanager
    async def _get(
        self,
        path: str,
        params: Mapping[str, str] | None = None,
        *,
        not_found: type[CatalogError] = CatalogUnreachableError,
        timeout: ClientTimeout | None = None,
    ) -> AsyncIterator[ClientResponse]:
        """
        Perform a GET request and map failures to catalog errors.

        Raises:
            CatalogAuthError: If the server rejects the API key.
            not_found: If the server answers 404.
            CatalogUnreachableError: On connection errors, timeouts and other HTTP errors.
        """
        url = f"{self._base_url}{path}"
        kwargs: dict[str, Any] = {"params": params, "headers": self._headers}
        if timeout is not None:
            # Replaces the session timeout for this request
            kwargs["timeout"] = timeout
        try:
            async with self._client_session.get(url, **kwargs) as response:
                if response.status in (401, 403):
                    raise CatalogAuthError(f"Jellyfin rejected the API key (HTTP {response.status})")
                if response.status == 404:
                    raise not_found(f"{path} not found on Jellyfin server")
                if response.status >= 400:
                    raise CatalogUnreachableError(f"GET {path} failed with HTTP {response.status}")
                yield response
        except (ClientError, TimeoutError) as err:
            raise CatalogUnreachableError(f"GET {path} failed: {err!r}") from err

    async def _get_json(self, path: str, params: Mapping[str, str] | None = None) -> Any:
        async with self._get(path, params) as response:
            body = await response.read()
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as err:
            raise CatalogUnreachableError(f"GET {path} returned invalid JSON") from err

    async def users(self) -> list[JellyfinUser]:
        """Return all users visible with the API key."""
        data = await self._get_json("/Users")
        return [JellyfinUser.from_dict(user) for user in data]

    async def views(self, user_id: str) -> list[JellyfinView]:
        """Return the library views (collections) of a user."""
        data = await self._get_json(f"/Users/{user_id}/Views")
        return JellyfinViewList.from_dict(data).items

    async def audio_items(
        self, user_id: str, collection_id: str, *, page_size: int = AUDIO_PAGE_SIZE
    ) -> list[JellyfinAudio]:
        """Return every audio item below a collection, fetching page by page."""
        items: list[JellyfinAudio] = []
        while True:
            params = {
                **_AUDIO_ITEM_QUERY,
                "ParentId": collection_id,
                "StartIndex": str(len(items)),
                "Limit": str(page_size),
            }
            page = JellyfinAudioList.from_dict(
                await self._get_json(f"/Users/{user_id}/Items", params)
            )
            items.extend(page.items)
            total = page.total_record_count
            if not page.items or len(page.items) < page_size:
                break
            if total is not None and len(items) >= total:
                break
        return items

    async def download(self, item_id: str) -> bytes:
        """Download the original file of an item."""
        async with self._get(
            f"/Items/{item_id}/Download",
            not_found=TrackNotFoundError,
            timeout=DOWNLOAD_TIMEOUT,
        ) as resp:
            return await resp.read()

    async def close(self) -> None:
        """Close the client session if it is owned by this client."""
        if self._owns_session and not self._client_session.closed:
            await self._client_session.close()


class JellyfinCatalog:
    """Catalog backed by one collection of a Jellyfin server."""

    _user_id: str | None = None
    """Administrator user the library is browsed as."""
    _collection_id: str | None = None

    def __init__(self, client: JellyfinClient, collection_name: str) -> None:
        """Initialize the catalog for the collection with the given name."""
        self._client = client
        self._collection_name = collection_name

    @property
    def collection_name(self) -> str:
        """Name of the collection the radio plays from."""
        return self._collection_name

    async def connect(self) -> None:
        """
        Resolve the administrator user and the configured collection.

        Raises:
            CatalogAuthError: If the API key is rejected or sees no administrator.
            CollectionNotFoundError: If no collection with the configured name exists.
            CatalogUnreachableError: If the server cannot be reached.
        """
        users = await self._client.users()
        admin_user = next((user for user in users if user.policy.is_administrator), None)
        if admin_user is None:
            raise CatalogAuthError("No administrator user visible with the configured API key")

        views = await self._client.views(admin_user.id)
        collection = next((view for view in views if view.name == self._collection_name), None)
        if collection is None:
            raise CollectionNotFoundError(
                f"Collection {self._collection_name!r} not found "
                f"(available: {', '.join(view.name for view in views) or 'none'})"
            )

        self._user_id = admin_user.id
        self._collection_id = collection.id
        logger.info(
            "Using collection %s (%s) as user %s",
            collection.name,
            collection.id,
            admin_user.name,
        )

    async def list_tracks(self) -> list[Track]:
        """Return all audio items of the collection."""
        if self._user_id is None or self._collection_id is None:
            raise RuntimeError("JellyfinCatalog.connect() must be called first")
        items = await self._client.audio_items(self._user_id, self._collection_id)
        if not items:
            raise CatalogEmptyError(f"Collection {self._collection_name!r} has no audio items")
        logger.debug("Fetched %d tracks from collection %s", len(items), self._collection_name)
        return [item.to_track() for item in items]

    async def open_audio(self, track_id: str) -> bytes:
        """Download the source audio of a track."""
        return await self._client.download(track_id)
