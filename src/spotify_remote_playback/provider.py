"""Async access to the provider's playback HTTP surface.

Spotipy is synchronous, so every call runs in a worker thread. Failures are
classified into the playback error taxonomy here so the adapter never inspects
spotipy exceptions itself.
"""

import asyncio
from collections.abc import Callable
from typing import Any

import requests
import spotipy

from spotify_remote_playback.config import PlaybackSettings
from spotify_remote_playback.errors import (
    NoActiveDeviceError,
    PlaybackError,
    ProviderError,
    TokenRevokedError,
    TransientError,
)
from spotify_remote_playback.models import Device

TOKEN_REVOKED_TAG = "TOKEN_REVOKED"
NO_ACTIVE_DEVICE_TAG = "NO_ACTIVE_DEVICE"
TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


def make_spotify_factory(settings: PlaybackSettings) -> Callable[[str], spotipy.Spotify]:
    """Build spotipy clients whose transport retries only transient statuses."""

    def factory(access_token: str) -> spotipy.Spotify:
        return spotipy.Spotify(
            auth=access_token,
            requests_timeout=settings.requests_timeout,
            retries=settings.requests_retries,
            status_retries=settings.requests_retries,
            status_forcelist=tuple(TRANSIENT_STATUSES),
        )

    return factory


def _tagged(exc: spotipy.SpotifyException, tag: str) -> bool:
    return any(tag in str(part) for part in (exc.code, exc.msg, exc.reason) if part)


def is_auth_failure(exc: BaseException) -> bool:
    """A 401, or a response explicitly tagged as a revoked token, triggers the refresh path."""
    if not isinstance(exc, spotipy.SpotifyException):
        return False
    return exc.http_status == 401 or _tagged(exc, TOKEN_REVOKED_TAG)  # noqa: PLR2004


def classify_provider_error(exc: BaseException) -> PlaybackError:
    """Map a provider or transport failure to the playback error taxonomy."""
    if isinstance(exc, PlaybackError):
        return exc
    if isinstance(exc, spotipy.SpotifyException):
        status = exc.http_status
        if is_auth_failure(exc):
            return TokenRevokedError("Spotify session expired, please reconnect Spotify")
        if status == 404 or _tagged(exc, NO_ACTIVE_DEVICE_TAG):  # noqa: PLR2004
            return NoActiveDeviceError("No Spotify device found. Open Spotify on a phone, computer or speaker first.")
        if status in TRANSIENT_STATUSES:
            return TransientError(f"Spotify is temporarily unavailable ({status})")
        return ProviderError(f"Spotify request failed: {exc.msg}", http_status=status)
    if isinstance(exc, requests.exceptions.RequestException):
        return TransientError(f"Spotify unreachable: {exc}")
    return ProviderError(str(exc))


class SpotifyPlaybackProvider:
    """Playback commands issued with a caller-supplied access token."""

    def __init__(self, spotify_factory: Callable[[str], spotipy.Spotify]) -> None:
        self.spotify_factory = spotify_factory
        self._client: spotipy.Spotify | None = None
        self._client_token: str | None = None

    def client(self, access_token: str) -> spotipy.Spotify:
        """Return a client bound to ``access_token``, reusing it while the token is unchanged."""
        if self._client is None or self._client_token != access_token:
            self._client = self.spotify_factory(access_token)
            self._client_token = access_token
        return self._client

    async def devices(self, access_token: str) -> list[Device]:
        response = await asyncio.to_thread(self.client(access_token).devices)
        return [Device.from_api(item) for item in (response or {}).get("devices", []) if item.get("id")]

    async def transfer(self, access_token: str, device_id: str, force_play: bool = True) -> None:
        await asyncio.to_thread(self.client(access_token).transfer_playback, device_id=device_id, force_play=force_play)

    async def start_playback(
        self, access_token: str, device_id: str | None = None, uris: list[str] | None = None
    ) -> None:
        await asyncio.to_thread(self.client(access_token).start_playback, device_id=device_id, uris=uris)

    async def pause(self, access_token: str, device_id: str | None = None) -> None:
        await asyncio.to_thread(self.client(access_token).pause_playback, device_id=device_id)

    async def seek(self, access_token: str, position_ms: int, device_id: str | None = None) -> None:
        await asyncio.to_thread(self.client(access_token).seek_track, position_ms, device_id=device_id)

    async def set_volume(self, access_token: str, volume_percent: int, device_id: str | None = None) -> None:
        await asyncio.to_thread(self.client(access_token).volume, volume_percent, device_id=device_id)

    async def current_playback(self, access_token: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self.client(access_token).current_playback)  # type: ignore[no-any-return]
