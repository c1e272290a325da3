"""
Spotify integration: short-lived access token cache, now-playing fetcher and
the authorization-code exchange used by the login callback.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

import aiohttp
from pydantic import ValidationError

from .config import Settings
from .errors import UpstreamError
from .schemas import CurrentlyPlayingResponse, TokenResponse, UserResponse
from .status import NOT_PLAYING, Playing, Status, estimate_start
from .tokens import TokenStore
from .utils import basic_auth

logger = logging.getLogger("nowplaying")

# Evict access tokens this many seconds before Spotify says they expire
EXPIRY_MARGIN = 5
SCOPE = "user-read-currently-playing"


@dataclass(frozen=True)
class Credential:
    token: str
    valid_until: float


class SpotifyAccounts:
    """Thin client for the accounts service token endpoint"""

    def __init__(self, http: aiohttp.ClientSession, settings: Settings):
        self.http = http
        self.settings = settings

    @property
    def token_url(self) -> str:
        return f"{self.settings.accounts_url}/api/token"

    def authorize_url(self) -> str:
        query = urlencode({
            "client_id": self.settings.client_id,
            "response_type": "code",
            "redirect_uri": self.settings.callback_url,
            "scope": SCOPE,
        })
        return f"{self.settings.accounts_url}/authorize?{query}"

    async def request_token(self, form: Dict[str, str]):
        """POST to the token endpoint; returns (status, json body or None)"""
        headers = {
            "Authorization": basic_auth(self.settings.client_id, self.settings.client_secret),
        }
        try:
            async with self.http.post(self.token_url, data=form, headers=headers) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                return resp.status, body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"Token request failed: {e!r}") from e

    async def exchange_code(self, code: str) -> Optional[TokenResponse]:
        """
        Exchange an authorization code. Returns None when Spotify rejects the
        code, raises UpstreamError on any other failure.
        """
        status, body = await self.request_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.callback_url,
        })
        if status == 400:
            return None
        if status != 200 or body is None:
            raise UpstreamError(f"Invalid status code {status}")
        try:
            token = TokenResponse.model_validate(body)
        except ValidationError as e:
            raise UpstreamError(f"Bad token response: {e}") from e
        if not token.refresh_token:
            raise UpstreamError("Token response has no refresh token")
        return token

    async def get_profile(self, access_token: str) -> UserResponse:
        url = f"{self.settings.api_url}/v1/me"
        try:
            async with self.http.get(url, headers={"Authorization": f"Bearer {access_token}"}) as resp:
                if resp.status != 200:
                    raise UpstreamError(f"Invalid status code {resp.status}")
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise UpstreamError(f"Profile request failed: {e!r}") from e
        try:
            return UserResponse.model_validate(body)
        except ValidationError as e:
            raise UpstreamError(f"Bad profile response: {e}") from e


class CredentialCache:
    """
    Access tokens keyed by user id, refreshed from the stored long-lived
    refresh token on a miss.

    ``get`` returns None when the user never authorized the application or
    has revoked access. Any other refresh failure raises UpstreamError and
    nothing is cached, so the next poll or subscribe retries.
    """

    def __init__(
        self,
        accounts: SpotifyAccounts,
        store: TokenStore,
        clock: Callable[[], float] = time.time,
    ):
        self.accounts = accounts
        self.store = store
        self.clock = clock
        self._credentials: Dict[str, Credential] = {}
        self._evictions: Dict[str, asyncio.TimerHandle] = {}

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._credentials

    async def get(self, user_id: str) -> Optional[Credential]:
        credential = self._credentials.get(user_id)
        if credential and self.clock() < credential.valid_until - EXPIRY_MARGIN:
            return credential
        if credential:
            self.invalidate(user_id)

        refresh_token = self.store.get(user_id)
        if not refresh_token:
            return None

        status, body = await self.accounts.request_token({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        if status == 400 and isinstance(body, dict) and body.get("error") == "invalid_grant":
            logger.info(f"🔒 User {user_id} has deauthorized the application")
            self.store.delete(user_id)
            return None
        if status != 200 or body is None:
            raise UpstreamError(f"Invalid status code {status}")
        try:
            token = TokenResponse.model_validate(body)
        except ValidationError as e:
            raise UpstreamError(f"Bad refresh response: {e}") from e

        if token.refresh_token and token.refresh_token != refresh_token:
            self.store.set(user_id, token.refresh_token)

        credential = Credential(token.access_token, self.clock() + token.expires_in)
        self._store(user_id, credential, token.expires_in)
        return credential

    def _store(self, user_id: str, credential: Credential, expires_in: float) -> None:
        self._cancel_eviction(user_id)
        self._credentials[user_id] = credential
        self._evictions[user_id] = asyncio.get_running_loop().call_later(
            max(expires_in - EXPIRY_MARGIN, 0), self._evict, user_id, credential
        )

    def _evict(self, user_id: str, credential: Credential) -> None:
        if self._credentials.get(user_id) is credential:
            del self._credentials[user_id]
            self._evictions.pop(user_id, None)

    def _cancel_eviction(self, user_id: str) -> None:
        handle = self._evictions.pop(user_id, None)
        if handle:
            handle.cancel()

    def invalidate(self, user_id: str) -> None:
        """Drop the cached access token so the next get refreshes it"""
        self._cancel_eviction(user_id)
        self._credentials.pop(user_id, None)

    def clear(self) -> None:
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        self._credentials.clear()


class StatusFetcher:
    """One currently-playing lookup, normalised into a Status"""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        settings: Settings,
        credentials: CredentialCache,
        clock: Callable[[], float] = time.time,
    ):
        self.http = http
        self.settings = settings
        self.credentials = credentials
        self.clock = clock

    @property
    def url(self) -> str:
        return f"{self.settings.api_url}/v1/me/player/currently-playing"

    async def fetch(self, user_id: str, credential: Credential) -> Status:
        headers = {"Authorization": f"Bearer {credential.token}"}
        before = self.clock() * 1000
        try:
            async with self.http.get(self.url, headers=headers) as resp:
                after = self.clock() * 1000
                if resp.status == 204:
                    return NOT_PLAYING
                if resp.status != 200:
                    self.credentials.invalidate(user_id)
                    raise UpstreamError(f"Invalid status code {resp.status}")
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise UpstreamError(f"Status request failed: {e!r}") from e

        try:
            data = CurrentlyPlayingResponse.model_validate(body)
        except ValidationError as e:
            raise UpstreamError(f"Bad currently-playing response: {e}") from e
        return to_status(data, (before + after) / 2)


def to_status(data: CurrentlyPlayingResponse, now_ms: float) -> Status:
    if data.currently_playing_type != "track" or not data.is_playing:
        return NOT_PLAYING
    item = data.item
    if item is None or data.progress_ms is None:
        raise UpstreamError("Playing track without item or progress")
    return Playing(
        song=item.name,
        album=item.album.name,
        artist=", ".join(artist.name for artist in item.artists),
        album_art=item.album.images[0].url if item.album.images else None,
        track_id=item.id,
        total=item.duration_ms // 1000,
        start=estimate_start(now_ms, data.progress_ms),
    )
