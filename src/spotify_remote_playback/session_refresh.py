"""Session refresh: exchanges stored refresh tokens for access tokens.

The coordinator is the only component talking to the provider's token
endpoint. It rotates the stored refresh token whenever the provider issues a
new one and revokes it when the provider reports it invalid.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import requests
import spotipy
from spotipy.oauth2 import SpotifyOAuth, SpotifyOauthError

from spotify_remote_playback.errors import (
    NoRefreshTokenError,
    ProviderError,
    TokenDecryptionError,
    TokenRevokedError,
    TransientError,
)
from spotify_remote_playback.logger import get_logger
from spotify_remote_playback.models import RefreshResult, now_ms
from spotify_remote_playback.token_repository import TokenRepository

# AIDEV-NOTE: OAuth error codes meaning the refresh token itself is dead
REVOKED_GRANT_ERRORS = frozenset({"invalid_grant"})
ACCESS_TOKEN_EXPIRY_MARGIN_MS = 5000
DEFAULT_EXPIRES_IN = 3600


@dataclass
class CachedAccessToken:
    result: RefreshResult
    expires_at: int


@dataclass
class UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


def default_spotify_factory(access_token: str) -> spotipy.Spotify:
    return spotipy.Spotify(auth=access_token, retries=0)


class SessionRefreshCoordinator:
    """Refreshes access tokens for users and keeps the token repository in step.

    Attributes:
        repository: Refresh token storage.
        sp_oauth: Spotipy OAuth manager used for the refresh grant.
        client_id: OAuth client recorded on rotated records lacking one.
    """

    def __init__(
        self,
        repository: TokenRepository,
        sp_oauth: SpotifyOAuth,
        client_id: str | None = None,
        spotify_factory: Callable[[str], spotipy.Spotify] = default_spotify_factory,
        clock: Callable[[], int] = now_ms,
        logger: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.sp_oauth = sp_oauth
        self.client_id = client_id
        self.spotify_factory = spotify_factory
        self.clock = clock
        self.logger = logger or get_logger(__name__)
        self._access_cache: dict[str, CachedAccessToken] = {}
        self._locks: dict[str, UserLock] = {}

    def _cached_token(self, user_id: str) -> str | None:
        cached = self._access_cache.get(user_id)
        if cached and cached.expires_at > self.clock() + ACCESS_TOKEN_EXPIRY_MARGIN_MS:
            return cached.result.access_token
        return None

    async def get_access_token(self, user_id: str) -> str:
        """Return a cached access token valid for a few more seconds, refreshing otherwise.

        Concurrent callers for one user share a single exchange: the cache is
        checked again once the user's refresh lock is held.
        """
        access_token = self._cached_token(user_id)
        if access_token:
            return access_token
        async with self._user_lock(user_id):
            access_token = self._cached_token(user_id)
            if access_token:
                return access_token
            result = await self._refresh(user_id)
        return result.access_token

    def is_premium(self, user_id: str) -> bool:
        """Whether the user's cached access token came with a premium subscription."""
        cached = self._access_cache.get(user_id)
        return bool(cached and cached.result.is_premium)

    def invalidate(self, user_id: str) -> None:
        self._access_cache.pop(user_id, None)

    async def refresh(self, user_id: str) -> RefreshResult:
        """Exchange the user's stored refresh token for a new access token.

        Always performs an exchange, even while a cached token looks valid.

        Args:
            user_id: Owner of the credential.

        Returns:
            The new access token with its expiry and the stored record version.

        Raises:
            NoRefreshTokenError: If the user has no usable stored credential.
            TokenRevokedError: If the provider rejected the refresh token; the record is revoked.
            TransientError: On network or provider-side failures; the record is untouched.
            RateLimitExceededError: If rotating the stored token would exceed the hourly ceiling.
        """
        async with self._user_lock(user_id):
            return await self._refresh(user_id)

    @contextlib.asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        # AIDEV-NOTE: A second exchange of an already rotated token reads as invalid_grant and would revoke
        entry = self._locks.get(user_id)
        if entry is None:
            entry = self._locks[user_id] = UserLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(user_id) is entry:
                del self._locks[user_id]

    def _store(self, user_id: str, result: RefreshResult) -> None:
        now = self.clock()
        # The cache holds unexpired tokens only
        expired = [key for key, cached in self._access_cache.items() if cached.expires_at <= now]
        for key in expired:
            del self._access_cache[key]
        self._access_cache[user_id] = CachedAccessToken(result=result, expires_at=now + result.expires_in * 1000)

    async def _refresh(self, user_id: str) -> RefreshResult:
        record = await asyncio.to_thread(self.repository.get_by_user, user_id)
        if record is None or record.revoked:
            raise NoRefreshTokenError(f"No refresh token stored for user {user_id}")

        try:
            refresh_token = self.repository.decrypt_refresh(record)
        except TokenDecryptionError as e:
            self.logger.error("Stored refresh token for user %s could not be decrypted: %s", user_id, e)
            raise TokenRevokedError("Stored Spotify credential is unreadable, please reconnect Spotify") from e
        if not refresh_token:
            raise NoRefreshTokenError(f"No refresh token stored for user {user_id}")

        try:
            token_info = await asyncio.to_thread(self.sp_oauth.refresh_access_token, refresh_token)
        except SpotifyOauthError as e:
            if getattr(e, "error", None) in REVOKED_GRANT_ERRORS:
                self.logger.warning("Refresh token for user %s was revoked by the provider", user_id)
                await asyncio.to_thread(self.repository.revoke, user_id)
                self.invalidate(user_id)
                raise TokenRevokedError("Spotify session expired, please reconnect Spotify") from e
            raise TransientError(f"Token refresh failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientError(f"Token endpoint unreachable: {e}") from e

        access_token = token_info.get("access_token")
        if not access_token:
            raise ProviderError("Spotify did not return an access token")

        # AIDEV-NOTE: spotipy echoes the old refresh token when none was issued; only rotate on a new one
        issued = token_info.get("refresh_token")
        rotated = issued if issued and issued != refresh_token else None
        updated = await asyncio.to_thread(
            self.repository.upsert_rotate,
            user_id,
            rotated,
            token_info.get("scope") or record.scope,
            client_id=record.client_id or self.client_id,
        )
        if rotated:
            self.logger.info("Rotated refresh token for user %s (v%d)", user_id, updated.version)

        expires_in = int(token_info.get("expires_in") or DEFAULT_EXPIRES_IN)
        result = RefreshResult(
            access_token=access_token,
            refresh_token_record_version=updated.version,
            expires_in=expires_in,
            is_premium=await self._fetch_is_premium(access_token),
        )
        self._store(user_id, result)
        return result

    async def _fetch_is_premium(self, access_token: str) -> bool:
        try:
            profile = await asyncio.to_thread(self.spotify_factory(access_token).current_user)
        except (spotipy.SpotifyException, requests.exceptions.RequestException) as e:
            self.logger.warning("Could not read subscription level: %s", e)
            return False
        return bool(profile) and profile.get("product") == "premium"
