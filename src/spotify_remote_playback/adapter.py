"""Remote playback adapter for one user's session.

The adapter issues playback commands to the provider, picks and claims an
output device, recovers once from an expired access token per call, and
polls the provider for playback status while a track is loaded.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

import requests
import spotipy

from spotify_remote_playback.config import PlaybackSettings
from spotify_remote_playback.device_resolver import resolve_device
from spotify_remote_playback.errors import (
    NoActiveDeviceError,
    NoRefreshTokenError,
    PlaybackValidationError,
    TokenRevokedError,
)
from spotify_remote_playback.logger import get_logger
from spotify_remote_playback.models import Device, PlaybackStatus, Track
from spotify_remote_playback.provider import SpotifyPlaybackProvider, classify_provider_error, is_auth_failure
from spotify_remote_playback.session_refresh import SessionRefreshCoordinator
from spotify_remote_playback.snapshot_store import DevicePreference, SnapshotStore

T = TypeVar("T")
StatusCallback = Callable[[PlaybackStatus], Awaitable[None] | None]


class RetryPhase(Enum):
    IDLE = "idle"
    RETRY_PENDING = "retry_pending"


class RetryGuard:
    """Retry-on-expiry state of a single adapter call.

    A fresh guard is built for every top-level operation, so no retry budget
    leaks from one call into the next.
    """

    def __init__(self) -> None:
        self.phase = RetryPhase.IDLE

    @property
    def retry_count(self) -> int:
        return 1 if self.phase is RetryPhase.RETRY_PENDING else 0

    def can_retry(self) -> bool:
        return self.phase is RetryPhase.IDLE

    def mark_retry(self) -> None:
        if not self.can_retry():
            raise RuntimeError("Retry budget already spent for this call")
        self.phase = RetryPhase.RETRY_PENDING


class StatusSubscription:
    """Handle of the single status subscriber of an adapter."""

    def __init__(self, adapter: "RemotePlaybackAdapter", callback: StatusCallback) -> None:
        self._adapter = adapter
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._adapter._release_subscription(self)


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class RemotePlaybackAdapter:
    """Playback command surface for one user.

    Calls on one adapter are serialized, which keeps each call's retry budget
    independent.

    Attributes:
        user_id: Owner of the session.
        coordinator: Source of access tokens and refreshes.
        provider: Provider playback API wrapper.
        snapshot_store: Persistence of the last used device, optional.
        settings: Polling and device activation timing.
        device_id: Device playback was last sent to.
        device_name: Name of that device, when resolved by the adapter.
        current_track: Track of the last successful load.
    """

    def __init__(
        self,
        user_id: str,
        coordinator: SessionRefreshCoordinator,
        provider: SpotifyPlaybackProvider,
        snapshot_store: SnapshotStore | None = None,
        settings: PlaybackSettings | None = None,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.user_id = user_id
        self.coordinator = coordinator
        self.provider = provider
        self.snapshot_store = snapshot_store
        self.settings = settings or PlaybackSettings()
        self.logger = logger or get_logger(__name__)
        self._sleep = sleep

        self.device_id: str | None = None
        self.device_name: str | None = None
        self.current_track: Track | None = None

        self._lock = asyncio.Lock()
        self._inflight: RetryGuard | None = None
        self._subscription: StatusSubscription | None = None
        self._poll_task: asyncio.Task | None = None
        self._polling_wanted = False
        self._suspended = False
        self._disposed = False

    # --- Command surface ---

    @property
    def retry_count(self) -> int:
        """Retry count of the call in flight, 0 when idle."""
        return self._inflight.retry_count if self._inflight else 0

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def is_suspended(self) -> bool:
        return self._suspended

    async def load(self, track: Track, auto_play: bool = True, device_id: str | None = None) -> None:
        """Send a track to a device and start status polling.

        Args:
            track: Track to play.
            auto_play: Pause right after loading when False.
            device_id: Explicit target device; resolved from the device list when omitted.

        Raises:
            PlaybackValidationError: If the track has no valid provider URI; no request is made.
            NoActiveDeviceError: If the provider lists no device.
            TokenRevokedError: If the credential is dead after the single refresh attempt.
        """
        uri = track.playback_uri()

        async def action(access_token: str) -> str:
            target = device_id or await self._resolve_and_claim_device(access_token)
            await self.provider.start_playback(access_token, device_id=target, uris=[uri])
            if not auto_play:
                await self.provider.pause(access_token, device_id=target)
            return target

        self.device_id = await self._execute("load", action)
        self.current_track = track
        self.logger.info("Loaded %s on device %s", uri, self.device_id)
        self._polling_wanted = True
        self._ensure_polling()

    async def list_devices(self) -> list[Device]:
        return await self._execute("devices", self.provider.devices)

    async def current_playback(self) -> dict[str, Any] | None:
        return await self._execute("current_playback", self.provider.current_playback)

    async def play(self) -> None:
        await self._command("play", lambda token: self.provider.start_playback(token, device_id=self.device_id))

    async def pause(self) -> None:
        await self._command("pause", lambda token: self.provider.pause(token, device_id=self.device_id))

    async def stop(self) -> None:
        try:
            await self._execute("stop", lambda token: self.provider.pause(token, device_id=self.device_id))
        finally:
            self._polling_wanted = False
            self._cancel_poll_task()
            self.current_track = None

    async def seek(self, position_ms: int) -> None:
        if position_ms < 0:
            raise PlaybackValidationError(f"Seek position must not be negative: {position_ms}")
        position = int(position_ms)
        await self._command("seek", lambda token: self.provider.seek(token, position, device_id=self.device_id))

    async def set_volume(self, volume: float) -> None:
        """Set the output volume.

        Args:
            volume: Fraction between 0.0 and 1.0, sent as a rounded percentage.
        """
        if not 0.0 <= volume <= 1.0:
            raise PlaybackValidationError(f"Volume must be between 0 and 1: {volume}")
        percent = round(volume * 100)
        await self._command("set_volume", lambda token: self.provider.set_volume(token, percent, self.device_id))

    def on_status(self, callback: StatusCallback) -> StatusSubscription:
        """Register the status subscriber.

        Raises:
            RuntimeError: If another subscription is still active.
        """
        if self._subscription is not None and self._subscription.active:
            raise RuntimeError("A status subscriber is already registered for this session")
        self._subscription = StatusSubscription(self, callback)
        return self._subscription

    def dispose(self) -> None:
        """Stop polling and drop the subscriber. Safe to call more than once."""
        self._disposed = True
        self._polling_wanted = False
        self._cancel_poll_task()
        if self._subscription is not None:
            self._subscription.unsubscribe()

    # --- Polling control ---

    def suspend_polling(self) -> None:
        """Halt polling while the application is in the background."""
        if self._suspended:
            return
        self._suspended = True
        self._cancel_poll_task()

    def resume_polling(self) -> None:
        """Restart polling on return to the foreground if a track is loaded."""
        if not self._suspended:
            return
        self._suspended = False
        self._ensure_polling()

    async def poll_status(self) -> bool:
        """Fetch and deliver one status report.

        Returns:
            False when polling must halt because the credential was rejected.
        """
        try:
            access_token = await self.coordinator.get_access_token(self.user_id)
            state = await self.provider.current_playback(access_token)
        except (TokenRevokedError, NoRefreshTokenError):
            self.logger.debug("Credential unavailable, halting status polling for user %s", self.user_id)
            return False
        except spotipy.SpotifyException as e:
            if is_auth_failure(e):
                self.logger.debug("Access token rejected, halting status polling for user %s", self.user_id)
                return False
            self.logger.warning("Playback status poll failed: %s", e)
            return True
        except Exception as e:
            self.logger.warning("Playback status poll failed: %s", e)
            return True

        status = PlaybackStatus.from_playback_state(state, self.settings.finish_tolerance_ms)
        if status is not None:
            await self._deliver(status)
        return True

    # --- Internals ---

    async def _execute(self, operation: str, action: Callable[[str], Awaitable[T]]) -> T:
        if self._disposed:
            raise RuntimeError("Adapter has been disposed")
        async with self._lock:
            guard = RetryGuard()
            self._inflight = guard
            try:
                while True:
                    access_token = await self.coordinator.get_access_token(self.user_id)
                    try:
                        return await action(access_token)
                    except spotipy.SpotifyException as e:
                        if not is_auth_failure(e):
                            raise classify_provider_error(e) from e
                        if not guard.can_retry():
                            raise TokenRevokedError("Spotify session expired, please reconnect Spotify") from e
                        guard.mark_retry()
                        self.logger.info("Access token rejected during %s, refreshing once", operation)
                        await self._refresh_after_expiry()
                    except requests.exceptions.RequestException as e:
                        raise classify_provider_error(e) from e
            finally:
                self._inflight = None

    async def _command(self, operation: str, action: Callable[[str], Awaitable[None]]) -> None:
        await self._execute(operation, action)
        # AIDEV-NOTE: A poll halted by a rejected token resumes once a command gets through again
        self._ensure_polling()

    async def _refresh_after_expiry(self) -> None:
        try:
            await self.coordinator.refresh(self.user_id)
        except (TokenRevokedError, NoRefreshTokenError) as e:
            raise TokenRevokedError(e.message) from e

    async def _resolve_and_claim_device(self, access_token: str) -> str:
        devices = await self.provider.devices(access_token)
        last_device_id = self.device_id
        if self.snapshot_store is not None:
            stored = await asyncio.to_thread(self.snapshot_store.load_device, self.user_id)
            if stored is not None:
                last_device_id = stored.id

        device = resolve_device(devices, last_device_id)
        if device is None:
            raise NoActiveDeviceError("No Spotify device found. Open Spotify on a phone, computer or speaker first.")

        if not device.is_active:
            # AIDEV-NOTE: Transfer with playback claims the device, the pause keeps it silent until the load plays
            self.logger.info("Activating device '%s' (%s)", device.name, device.type)
            await self.provider.transfer(access_token, device.id, force_play=True)
            await self._sleep(self.settings.device_settle_delay)
            await self.provider.pause(access_token, device_id=device.id)

        self.device_id = device.id
        self.device_name = device.name
        if self.snapshot_store is not None:
            await asyncio.to_thread(
                self.snapshot_store.save_device, self.user_id, DevicePreference(id=device.id, name=device.name)
            )
        return device.id

    def _ensure_polling(self) -> None:
        if not self._polling_wanted or self._suspended or self._disposed:
            return
        if self.is_polling:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    def _cancel_poll_task(self) -> None:
        task, self._poll_task = self._poll_task, None
        # AIDEV-NOTE: A subscriber may stop playback from inside the poll task; that task exits on its own
        if task is not None and task is not _current_task():
            task.cancel()

    async def _poll_loop(self) -> None:
        me = _current_task()
        while self._poll_task is me:
            await self._sleep(self.settings.poll_interval)
            if self._poll_task is not me:
                return
            if not await self.poll_status():
                if self._poll_task is me:
                    self._poll_task = None
                return

    async def _deliver(self, status: PlaybackStatus) -> None:
        subscription = self._subscription
        if subscription is None or not subscription.active:
            return
        try:
            result = subscription.callback(status)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.error("Status subscriber failed", exc_info=True)

    def _release_subscription(self, subscription: StatusSubscription) -> None:
        if self._subscription is subscription:
            self._subscription = None
