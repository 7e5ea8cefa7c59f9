"""Tests for the remote playback adapter."""

import asyncio
import unittest
from collections.abc import Callable
from unittest.mock import AsyncMock, Mock, call

import requests
import spotipy

from spotify_remote_playback.adapter import RemotePlaybackAdapter, RetryGuard
from spotify_remote_playback.config import PlaybackSettings
from spotify_remote_playback.errors import (
    NoActiveDeviceError,
    NoRefreshTokenError,
    PlaybackValidationError,
    ProviderError,
    TokenRevokedError,
    TransientError,
)
from spotify_remote_playback.models import Device, PlaybackStatus, Track
from spotify_remote_playback.snapshot_store import DevicePreference, InMemorySnapshotStore

TRACK = Track(id="4uLU6hMCjMI75M1A2tKUQC", name="Song", uri="spotify:track:4uLU6hMCjMI75M1A2tKUQC")


def unauthorized() -> spotipy.SpotifyException:
    return spotipy.SpotifyException(401, -1, "The access token expired")


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class AdapterTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.coordinator = Mock()
        self.coordinator.get_access_token = AsyncMock(return_value="access-1")
        self.coordinator.refresh = AsyncMock()

        self.provider = Mock()
        self.provider.devices = AsyncMock(return_value=[])
        self.provider.transfer = AsyncMock()
        self.provider.start_playback = AsyncMock()
        self.provider.pause = AsyncMock()
        self.provider.seek = AsyncMock()
        self.provider.set_volume = AsyncMock()
        self.provider.current_playback = AsyncMock(return_value=None)

        self.snapshot_store = InMemorySnapshotStore()
        self.settings = PlaybackSettings(poll_interval=0.01, device_settle_delay=0.8)
        self.sleeps: list[float] = []
        self.mock_logger = Mock()
        self.adapter = RemotePlaybackAdapter(
            "user-1",
            self.coordinator,
            self.provider,
            snapshot_store=self.snapshot_store,
            settings=self.settings,
            logger=self.mock_logger,
            sleep=self.recording_sleep,
        )

    async def asyncTearDown(self) -> None:
        self.adapter.dispose()

    async def recording_sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        await asyncio.sleep(0.001)


class TestRetryGuard(unittest.TestCase):
    def test_single_retry(self) -> None:
        guard = RetryGuard()

        self.assertTrue(guard.can_retry())
        guard.mark_retry()
        self.assertEqual(guard.retry_count, 1)
        self.assertFalse(guard.can_retry())
        with self.assertRaises(RuntimeError):
            guard.mark_retry()


class TestRetryOnExpiry(AdapterTestCase):
    async def test_expired_token_is_refreshed_once_and_retried(self) -> None:
        seen_retry_counts = []

        async def pause(access_token, device_id=None):
            seen_retry_counts.append(self.adapter.retry_count)
            if len(seen_retry_counts) == 1:
                raise unauthorized()

        self.provider.pause.side_effect = pause

        await self.adapter.pause()

        self.coordinator.refresh.assert_awaited_once_with("user-1")
        self.assertEqual(self.provider.pause.await_count, 2)
        self.assertEqual(seen_retry_counts, [0, 1])
        self.assertEqual(self.adapter.retry_count, 0)

    async def test_second_expiry_is_terminal(self) -> None:
        self.provider.pause.side_effect = [unauthorized(), unauthorized()]

        with self.assertRaises(TokenRevokedError) as ctx:
            await self.adapter.pause()

        self.assertTrue(ctx.exception.requires_reauth)
        self.assertTrue(ctx.exception.to_dict()["requiresReauth"])
        self.coordinator.refresh.assert_awaited_once()
        self.assertEqual(self.provider.pause.await_count, 2)
        self.assertEqual(self.adapter.retry_count, 0)

    async def test_revoked_tag_triggers_refresh(self) -> None:
        self.provider.seek.side_effect = [spotipy.SpotifyException(400, -1, "TOKEN_REVOKED"), None]

        await self.adapter.seek(1000)

        self.coordinator.refresh.assert_awaited_once()
        self.assertEqual(self.provider.seek.await_count, 2)

    async def test_revoked_credential_during_refresh_stops(self) -> None:
        self.provider.pause.side_effect = unauthorized()
        self.coordinator.refresh.side_effect = TokenRevokedError("Spotify session expired")

        with self.assertRaises(TokenRevokedError) as ctx:
            await self.adapter.pause()

        self.assertTrue(ctx.exception.requires_reauth)
        self.assertEqual(self.provider.pause.await_count, 1)
        self.assertEqual(self.adapter.retry_count, 0)

    async def test_missing_refresh_token_during_refresh_is_terminal(self) -> None:
        self.provider.pause.side_effect = unauthorized()
        self.coordinator.refresh.side_effect = NoRefreshTokenError("No refresh token stored")

        with self.assertRaises(TokenRevokedError):
            await self.adapter.pause()

    async def test_each_call_has_its_own_retry(self) -> None:
        self.provider.pause.side_effect = [unauthorized(), None, unauthorized(), None]

        await self.adapter.pause()
        await self.adapter.pause()

        self.assertEqual(self.coordinator.refresh.await_count, 2)
        self.assertEqual(self.provider.pause.await_count, 4)

    async def test_concurrent_calls_are_serialized(self) -> None:
        self.provider.pause.side_effect = [unauthorized(), None, unauthorized(), None]

        await asyncio.gather(self.adapter.pause(), self.adapter.pause())

        self.assertEqual(self.coordinator.refresh.await_count, 2)


class TestErrorNormalization(AdapterTestCase):
    async def test_not_found_means_no_active_device(self) -> None:
        self.provider.pause.side_effect = spotipy.SpotifyException(404, -1, "Player command failed: No active device found")

        with self.assertRaises(NoActiveDeviceError) as ctx:
            await self.adapter.pause()

        self.assertEqual(ctx.exception.to_dict(), {"message": ctx.exception.message, "code": "NO_ACTIVE_DEVICE"})
        self.coordinator.refresh.assert_not_awaited()

    async def test_server_errors_are_transient(self) -> None:
        self.provider.pause.side_effect = spotipy.SpotifyException(503, -1, "Service unavailable")

        with self.assertRaises(TransientError):
            await self.adapter.pause()

        self.coordinator.refresh.assert_not_awaited()

    async def test_connection_errors_are_transient(self) -> None:
        self.provider.pause.side_effect = requests.exceptions.ConnectionError("reset")

        with self.assertRaises(TransientError):
            await self.adapter.pause()

    async def test_other_statuses_are_provider_errors(self) -> None:
        self.provider.pause.side_effect = spotipy.SpotifyException(403, -1, "Restriction violated")

        with self.assertRaises(ProviderError) as ctx:
            await self.adapter.pause()

        self.assertEqual(ctx.exception.http_status, 403)

    async def test_invalid_uri_is_rejected_before_any_request(self) -> None:
        for track in (
            Track(id="-MxYz123", name="Foreign key"),
            Track(id="abc_def", name="Underscore"),
            Track(id="abc", uri="spotify:album:abc"),
        ):
            with self.assertRaises(PlaybackValidationError):
                await self.adapter.load(track)

        self.coordinator.get_access_token.assert_not_awaited()
        self.provider.start_playback.assert_not_awaited()

    async def test_volume_and_seek_validation(self) -> None:
        with self.assertRaises(PlaybackValidationError):
            await self.adapter.set_volume(1.5)
        with self.assertRaises(PlaybackValidationError):
            await self.adapter.seek(-1)

        self.provider.set_volume.assert_not_awaited()
        self.provider.seek.assert_not_awaited()

    async def test_volume_is_sent_as_percent(self) -> None:
        await self.adapter.set_volume(0.456)

        self.provider.set_volume.assert_awaited_once_with("access-1", 46, None)


class TestLoad(AdapterTestCase):
    async def test_inactive_device_is_claimed_before_playing(self) -> None:
        self.provider.devices.return_value = [
            Device(id="desk", name="Desktop", type="Computer", is_active=True),
            Device(id="phone", name="Pixel", type="Smartphone", is_active=False),
        ]

        await self.adapter.load(TRACK)

        calls = [c for c in self.provider.mock_calls if c[0] != "current_playback"]
        self.assertEqual(
            calls,
            [
                call.devices("access-1"),
                call.transfer("access-1", "phone", force_play=True),
                call.pause("access-1", device_id="phone"),
                call.start_playback("access-1", device_id="phone", uris=[TRACK.uri]),
            ],
        )
        self.assertEqual(self.sleeps[0], 0.8)
        self.assertEqual(self.adapter.device_id, "phone")
        self.assertEqual(self.adapter.device_name, "Pixel")
        self.assertEqual(self.snapshot_store.load_device("user-1"), DevicePreference(id="phone", name="Pixel"))
        self.assertEqual(self.adapter.current_track, TRACK)

    async def test_active_device_is_used_directly(self) -> None:
        self.provider.devices.return_value = [Device(id="phone", name="Pixel", type="Smartphone", is_active=True)]

        await self.adapter.load(TRACK)

        self.provider.transfer.assert_not_awaited()
        self.provider.start_playback.assert_awaited_once_with("access-1", device_id="phone", uris=[TRACK.uri])

    async def test_persisted_device_is_preferred(self) -> None:
        self.snapshot_store.save_device("user-1", DevicePreference(id="speaker", name="Kitchen"))
        self.provider.devices.return_value = [
            Device(id="phone", name="Pixel", type="Smartphone", is_active=True),
            Device(id="speaker", name="Kitchen", type="Speaker", is_active=True),
        ]

        await self.adapter.load(TRACK)

        self.assertEqual(self.adapter.device_id, "speaker")

    async def test_no_device(self) -> None:
        with self.assertRaises(NoActiveDeviceError):
            await self.adapter.load(TRACK)

        self.provider.start_playback.assert_not_awaited()
        self.assertFalse(self.adapter.is_polling)

    async def test_explicit_device_skips_resolution(self) -> None:
        await self.adapter.load(TRACK, auto_play=False, device_id="given")

        self.provider.devices.assert_not_awaited()
        self.provider.start_playback.assert_awaited_once_with("access-1", device_id="given", uris=[TRACK.uri])
        self.provider.pause.assert_awaited_once_with("access-1", device_id="given")

    async def test_load_starts_polling_and_stop_ends_it(self) -> None:
        await self.adapter.load(TRACK, device_id="given")
        self.assertTrue(self.adapter.is_polling)
        await wait_for(lambda: self.provider.current_playback.await_count > 0)

        await self.adapter.stop()

        self.assertFalse(self.adapter.is_polling)
        self.assertIsNone(self.adapter.current_track)


class TestStatusPolling(AdapterTestCase):
    async def test_status_is_normalized(self) -> None:
        received: list[PlaybackStatus] = []
        self.adapter.on_status(received.append)
        self.provider.current_playback.return_value = {
            "progress_ms": 199_700,
            "is_playing": False,
            "item": {"duration_ms": 200_000},
        }

        self.assertTrue(await self.adapter.poll_status())

        self.assertEqual(
            received,
            [PlaybackStatus(position_millis=199_700, duration_millis=200_000, is_playing=False, did_just_finish=True)],
        )

    async def test_playing_near_end_is_not_finished(self) -> None:
        received: list[PlaybackStatus] = []
        self.adapter.on_status(received.append)
        self.provider.current_playback.return_value = {
            "progress_ms": 199_900,
            "is_playing": True,
            "item": {"duration_ms": 200_000},
        }

        await self.adapter.poll_status()

        self.assertFalse(received[0].did_just_finish)

    async def test_async_subscriber(self) -> None:
        subscriber = AsyncMock()
        self.adapter.on_status(subscriber)
        self.provider.current_playback.return_value = {"progress_ms": 10, "is_playing": True, "item": {"duration_ms": 0}}

        await self.adapter.poll_status()

        subscriber.assert_awaited_once()

    async def test_expired_token_halts_polling_silently(self) -> None:
        subscriber = Mock()
        self.adapter.on_status(subscriber)
        self.provider.current_playback.side_effect = unauthorized()

        self.assertFalse(await self.adapter.poll_status())

        subscriber.assert_not_called()
        self.coordinator.refresh.assert_not_awaited()

    async def test_revoked_credential_halts_polling(self) -> None:
        self.coordinator.get_access_token.side_effect = TokenRevokedError("revoked")

        self.assertFalse(await self.adapter.poll_status())

    async def test_other_failures_are_logged_and_ignored(self) -> None:
        self.provider.current_playback.side_effect = spotipy.SpotifyException(502, -1, "Bad gateway")

        self.assertTrue(await self.adapter.poll_status())

        self.mock_logger.warning.assert_called_once()

    async def test_poll_loop_stops_after_expiry(self) -> None:
        self.provider.current_playback.side_effect = unauthorized()

        await self.adapter.load(TRACK, device_id="given")
        await wait_for(lambda: not self.adapter.is_polling)

        self.assertEqual(self.provider.current_playback.await_count, 1)

    async def test_next_command_restarts_halted_polling(self) -> None:
        await self.adapter.load(TRACK, device_id="given")
        commands = {
            "seek": lambda: self.adapter.seek(1000),
            "pause": self.adapter.pause,
            "set_volume": lambda: self.adapter.set_volume(0.5),
            "play": self.adapter.play,
        }

        for name, command in commands.items():
            with self.subTest(command=name):
                self.provider.current_playback.side_effect = unauthorized()
                await wait_for(lambda: not self.adapter.is_polling)
                self.provider.current_playback.side_effect = None

                await command()

                self.assertTrue(self.adapter.is_polling)

    async def test_commands_do_not_start_polling_without_a_loaded_track(self) -> None:
        await self.adapter.pause()
        await self.adapter.seek(0)

        self.assertFalse(self.adapter.is_polling)

    async def test_subscriber_errors_do_not_stop_polling(self) -> None:
        self.adapter.on_status(Mock(side_effect=ValueError("boom")))
        self.provider.current_playback.return_value = {"progress_ms": 10, "is_playing": True, "item": {"duration_ms": 1}}

        await self.adapter.load(TRACK, device_id="given")
        await wait_for(lambda: self.provider.current_playback.await_count >= 2)

        self.assertTrue(self.adapter.is_polling)
        self.mock_logger.error.assert_called()

    async def test_single_subscriber(self) -> None:
        subscription = self.adapter.on_status(Mock())

        with self.assertRaises(RuntimeError):
            self.adapter.on_status(Mock())

        subscription.unsubscribe()
        subscription.unsubscribe()
        self.adapter.on_status(Mock())


class TestLifecycle(AdapterTestCase):
    async def test_suspend_and_resume_are_idempotent(self) -> None:
        await self.adapter.load(TRACK, device_id="given")

        self.adapter.suspend_polling()
        self.adapter.suspend_polling()
        self.assertFalse(self.adapter.is_polling)
        self.assertEqual(self.adapter.device_id, "given")

        self.adapter.resume_polling()
        self.adapter.resume_polling()
        self.assertTrue(self.adapter.is_polling)

    async def test_resume_without_loaded_track_does_not_poll(self) -> None:
        self.adapter.suspend_polling()
        self.adapter.resume_polling()

        self.assertFalse(self.adapter.is_polling)

    async def test_load_while_suspended_does_not_poll(self) -> None:
        self.adapter.suspend_polling()

        await self.adapter.load(TRACK, device_id="given")

        self.assertFalse(self.adapter.is_polling)
        self.adapter.resume_polling()
        self.assertTrue(self.adapter.is_polling)

    async def test_dispose_stops_everything(self) -> None:
        subscription = self.adapter.on_status(Mock())
        await self.adapter.load(TRACK, device_id="given")

        self.adapter.dispose()
        self.adapter.dispose()

        self.assertFalse(self.adapter.is_polling)
        self.assertFalse(subscription.active)
        with self.assertRaises(RuntimeError):
            await self.adapter.play()
