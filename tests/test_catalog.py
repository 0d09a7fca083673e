from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from aiohttp import ClientSession, ClientTimeout, web
from conftest import get_free_port

from aiojellyradio.catalog import JellyfinCatalog, JellyfinClient
from aiojellyradio.errors import (
    CatalogAuthError,
    CatalogEmptyError,
    CatalogUnreachableError,
    CollectionNotFoundError,
    TrackNotFoundError,
)

API_KEY = "secret-key"


class FakeJellyfin:
    """Minimal Jellyfin server serving one music collection."""

    def __init__(self) -> None:
        self.users = [
            {"Id": "u-guest", "Name": "guest", "Policy": {"IsAdministrator": False}},
            {"Id": "u-admin", "Name": "admin", "Policy": {"IsAdministrator": True}},
        ]
        self.views = [
            {"Id": "c-movies", "Name": "Movies", "CollectionType": "movies"},
            {"Id": "c-music", "Name": "Music", "CollectionType": "music"},
        ]
        self.audio = [
            {"Id": f"a{i}", "Name": f"Song {i}", "Artists": ["Band"], "RunTimeTicks": 10_000_000 * i}
            for i in range(1, 6)
        ]
        self.files = {"a1": b"ID3fake-mp3"}
        self.item_requests: list[dict[str, str]] = []
        self.fail_items_with: int | None = None
        self.trickle_s = 0.0
        """Pause between the pieces of a download."""

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth])
        app.router.add_get("/Users", self._users)
        app.router.add_get("/Users/{user_id}/Views", self._views)
        app.router.add_get("/Users/{user_id}/Items", self._items)
        app.router.add_get("/Items/{item_id}/Download", self._download)
        return app

    @web.middleware
    async def _auth(self, request: web.Request, handler):
        if request.headers.get("Authorization") != f'MediaBrowser Token="{API_KEY}"':
            raise web.HTTPUnauthorized
        return await handler(request)

    async def _users(self, _request: web.Request) -> web.Response:
        return web.json_response(self.users)

    async def _views(self, request: web.Request) -> web.Response:
        assert request.match_info["user_id"] == "u-admin"
        return web.json_response({"Items": self.views, "TotalRecordCount": len(self.views)})

    async def _items(self, request: web.Request) -> web.Response:
        if self.fail_items_with is not None:
            return web.Response(status=self.fail_items_with)
        query = dict(request.query)
        self.item_requests.append(query)
        assert query["ParentId"] == "c-music"
        start = int(query["StartIndex"])
        limit = int(query["Limit"])
        return web.json_response(
            {"Items": self.audio[start : start + limit], "TotalRecordCount": len(self.audio)}
        )

    async def _download(self, request: web.Request) -> web.StreamResponse:
        item_id = request.match_info["item_id"]
        if item_id not in self.files:
            raise web.HTTPNotFound
        body = self.files[item_id]
        if not self.trickle_s:
            return web.Response(body=body, content_type="audio/mpeg")
        response = web.StreamResponse(headers={"Content-Type": "audio/mpeg"})
        response.content_length = len(body)
        await response.prepare(request)
        piece = len(body) // 4 + 1
        for offset in range(0, len(body), piece):
            await asyncio.sleep(self.trickle_s)
            await response.write(body[offset : offset + piece])
        await response.write_eof()
        return response


@pytest_asyncio.fixture
async def jellyfin() -> AsyncIterator[tuple[FakeJellyfin, str]]:
    fake = FakeJellyfin()
    runner = web.AppRunner(fake.create_app())
    await runner.setup()
    port = get_free_port()
    site = web.TCPSite(runner, host="127.0.0.1", port=port)
    await site.start()
    try:
        yield fake, f"http://127.0.0.1:{port}/"
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_connect_and_list_tracks(jellyfin: tuple[FakeJellyfin, str]) -> None:
    fake, url = jellyfin
    client = JellyfinClient(url, API_KEY)
    try:
        catalog = JellyfinCatalog(client, "Music")
        await catalog.connect()
        tracks = await catalog.list_tracks()
    finally:
        await client.close()

    assert client.base_url == url.rstrip("/")
    assert [track.track_id for track in tracks] == ["a1", "a2", "a3", "a4", "a5"]
    assert tracks[1].duration_s == 2.0
    assert tracks[0].artists == ("Band",)


@pytest.mark.asyncio
async def test_audio_items_are_paged(jellyfin: tuple[FakeJellyfin, str]) -> None:
    fake, url = jellyfin
    client = JellyfinClient(url, API_KEY)
    try:
        items = await client.audio_items("u-admin", "c-music", page_size=2)
    finally:
        await client.close()

    assert len(items) == 5
    assert [request["StartIndex"] for request in fake.item_requests] == ["0", "2", "4"]
    assert fake.item_requests[0]["Recursive"] == "true"
    assert fake.item_requests[0]["MediaTypes"] == "Audio"


@pytest.mark.asyncio
async def test_unknown_collection(jellyfin: tuple[FakeJellyfin, str]) -> None:
    _fake, url = jellyfin
    client = JellyfinClient(url, API_KEY)
    try:
        with pytest.raises(CollectionNotFoundError, match="Music, Movies|Movies, Music"):
            await JellyfinCatalog(client, "Podcasts").connect()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_no_administrator(jellyfin: tuple[FakeJellyfin, str]) -> None:
    fake, url = jellyfin
    fake.users = fake.users[:1]
    client = JellyfinClient(url, API_KEY)
    try:
        with pytest.raises(CatalogAuthError):
            await JellyfinCatalog(client, "Music").connect()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_wrong_api_key(jellyfin: tuple[FakeJellyfin, str]) -> None:
    _fake, url = jellyfin
    client = JellyfinClient(url, "wrong")
    try:
        with pytest.raises(CatalogAuthError):
            await client.users()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_empty_collection(jellyfin: tuple[FakeJellyfin, str]) -> None:
    fake, url = jellyfin
    fake.audio = []
    client = JellyfinClient(url, API_KEY)
    try:
        catalog = JellyfinCatalog(client, "Music")
        await catalog.connect()
        with pytest.raises(CatalogEmptyError):
            await catalog.list_tracks()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_list_tracks_requires_connect(jellyfin: tuple[FakeJellyfin, str]) -> None:
    _fake, url = jellyfin
    client = JellyfinClient(url, API_KEY)
    try:
        with pytest.raises(RuntimeError):
            await JellyfinCatalog(client, "Music").list_tracks()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_server_error_is_transient(jellyfin: tuple[FakeJellyfin, str]) -> None:
    fake, url = jellyfin
    fake.fail_items_with = 503
    client = JellyfinClient(url, API_KEY)
    try:
        with pytest.raises(CatalogUnreachableError):
            await client.audio_items("u-admin", "c-music")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_open_audio(jellyfin: tuple[FakeJellyfin, str]) -> None:
    _fake, url = jellyfin
    client = JellyfinClient(url, API_KEY)
    try:
        catalog = JellyfinCatalog(client, "Music")
        assert await catalog.open_audio("a1") == b"ID3fake-mp3"
        with pytest.raises(TrackNotFoundError):
            await catalog.open_audio("a2")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unreachable_server() -> None:
    client = JellyfinClient(f"http://127.0.0.1:{get_free_port()}", API_KEY)
    try:
        with pytest.raises(CatalogUnreachableError):
            await client.users()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_slow_download_is_not_cut_off(jellyfin: tuple[FakeJellyfin, str]) -> None:
    fake, url = jellyfin
    fake.files["a2"] = b"flac" * 1000
    fake.trickle_s = 0.1
    # API calls keep the short session timeout, the download outlasts it
    async with ClientSession(timeout=ClientTimeout(total=0.2)) as session:
        client = JellyfinClient(url, API_KEY, session)
        assert len(await client.users()) == 2
        assert await client.download("a2") == b"flac" * 1000
