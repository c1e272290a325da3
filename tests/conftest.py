import asyncio

import aiohttp
import pytest
from aiohttp import web

from main import create_app
from nowplaying.config import Settings
from nowplaying.spotify import CredentialCache, SpotifyAccounts, StatusFetcher
from nowplaying.tokens import TokenStore


def track_payload(
    progress_ms=30_000,
    is_playing=True,
    kind="track",
    name="Money",
    track_id="track1",
    artists=("Pink Floyd",),
    images=("https://i.scdn.co/image/cover",),
    duration_ms=382_500,
):
    return {
        "currently_playing_type": kind,
        "is_playing": is_playing,
        "progress_ms": progress_ms,
        "timestamp": 0,
        "item": {
            "id": track_id,
            "name": name,
            "duration_ms": duration_ms,
            "album": {
                "name": "The Dark Side Of The Moon",
                "images": [{"url": u, "height": 640, "width": 640} for u in images],
            },
            "artists": [{"name": a} for a in artists],
        },
    }


class FakeSpotify:
    """In-process stand-in for the accounts and web APIs"""

    def __init__(self):
        # refresh token -> user id
        self.refresh_tokens = {}
        # authorization code -> (user id, display name, refresh token)
        self.codes = {}
        # user id -> (status, json body)
        self.now_playing = {}
        self.token_status = None
        self.np_status = None
        # seconds the currently-playing endpoint waits before answering
        self.np_delay = 0
        self.expires_in = 3600
        self.token_calls = 0
        self.np_calls = 0
        self._access = {}

    def authorize(self, user_id, refresh_token=None):
        refresh_token = refresh_token or f"refresh-{user_id}"
        self.refresh_tokens[refresh_token] = user_id
        return refresh_token

    def revoke(self, user_id):
        self.refresh_tokens = {r: u for r, u in self.refresh_tokens.items() if u != user_id}

    def play(self, user_id, payload):
        self.now_playing[user_id] = (200, payload)

    def stop(self, user_id):
        self.now_playing[user_id] = (204, None)

    def _issue(self, user_id):
        token = f"access-{user_id}-{self.token_calls}"
        self._access[token] = user_id
        return token

    async def token(self, request):
        self.token_calls += 1
        if self.token_status is not None:
            return web.json_response({"error": "server_error"}, status=self.token_status)
        form = await request.post()
        if form.get("grant_type") == "refresh_token":
            user_id = self.refresh_tokens.get(form.get("refresh_token"))
            if user_id is None:
                return web.json_response({"error": "invalid_grant"}, status=400)
            return web.json_response({
                "access_token": self._issue(user_id),
                "token_type": "Bearer",
                "expires_in": self.expires_in,
            })
        if form.get("grant_type") == "authorization_code":
            entry = self.codes.get(form.get("code"))
            if entry is None:
                return web.json_response({"error": "invalid_grant"}, status=400)
            user_id, _, refresh_token = entry
            self.authorize(user_id, refresh_token)
            return web.json_response({
                "access_token": self._issue(user_id),
                "token_type": "Bearer",
                "expires_in": self.expires_in,
                "refresh_token": refresh_token,
            })
        return web.json_response({"error": "unsupported_grant_type"}, status=400)

    def _user(self, request):
        auth = request.headers.get("Authorization", "")
        return self._access.get(auth.removeprefix("Bearer "))

    async def me(self, request):
        user_id = self._user(request)
        if user_id is None:
            return web.json_response({"error": "invalid token"}, status=401)
        display_name = next(
            (name for uid, name, _ in self.codes.values() if uid == user_id), user_id
        )
        return web.json_response({"id": user_id, "display_name": display_name})

    async def currently_playing(self, request):
        self.np_calls += 1
        if self.np_delay:
            await asyncio.sleep(self.np_delay)
        if self.np_status is not None:
            return web.json_response({"error": "oops"}, status=self.np_status)
        user_id = self._user(request)
        if user_id is None:
            return web.json_response({"error": "invalid token"}, status=401)
        status, body = self.now_playing.get(user_id, (204, None))
        if status == 204:
            return web.Response(status=204)
        return web.json_response(body, status=status)

    def app(self):
        app = web.Application()
        app.router.add_post("/api/token", self.token)
        app.router.add_get("/v1/me", self.me)
        app.router.add_get("/v1/me/player/currently-playing", self.currently_playing)
        return app


@pytest.fixture
def spotify():
    return FakeSpotify()


@pytest.fixture
async def spotify_url(aiohttp_server, spotify):
    server = await aiohttp_server(spotify.app())
    return str(server.make_url("")).rstrip("/")


@pytest.fixture
def settings(spotify_url, tmp_path):
    return Settings(
        callback_url="http://localhost/api/callback",
        client_id="client",
        client_secret="secret",
        update_interval=60_000,
        heartbeat_interval=15_000,
        subscribe_timeout=10_000,
        data_dir=tmp_path,
        accounts_url=spotify_url,
        api_url=spotify_url,
    )


@pytest.fixture
def token_store(tmp_path):
    return TokenStore(tmp_path / "tokens.json")


@pytest.fixture
def authorize(spotify, token_store):
    """Give a user a stored refresh token Spotify accepts"""

    def _authorize(user_id):
        token_store.set(user_id, spotify.authorize(user_id))

    return _authorize


@pytest.fixture
async def http():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def clock():
    return lambda: 1_700_000_000.0


@pytest.fixture
def credentials(http, settings, token_store, clock):
    return CredentialCache(SpotifyAccounts(http, settings), token_store, clock=clock)


@pytest.fixture
def fetcher(http, settings, credentials, clock):
    return StatusFetcher(http, settings, credentials, clock=clock)


@pytest.fixture
async def client(aiohttp_client, settings, token_store):
    return await aiohttp_client(create_app(settings, token_store))
