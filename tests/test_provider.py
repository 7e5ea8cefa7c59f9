import unittest
from unittest.mock import Mock

import requests
import spotipy

from spotify_remote_playback.errors import (
    NoActiveDeviceError,
    PlaybackValidationError,
    ProviderError,
    TokenRevokedError,
    TransientError,
)
from spotify_remote_playback.provider import SpotifyPlaybackProvider, classify_provider_error, is_auth_failure


class TestClassification(unittest.TestCase):
    def test_auth_failures(self) -> None:
        self.assertTrue(is_auth_failure(spotipy.SpotifyException(401, -1, "expired")))
        self.assertTrue(is_auth_failure(spotipy.SpotifyException(400, "TOKEN_REVOKED", "revoked")))
        self.assertFalse(is_auth_failure(spotipy.SpotifyException(403, -1, "forbidden")))
        self.assertFalse(is_auth_failure(ValueError("401")))

    def test_mapping(self) -> None:
        cases = [
            (spotipy.SpotifyException(401, -1, "expired"), TokenRevokedError),
            (spotipy.SpotifyException(404, -1, "Player command failed: No active device found"), NoActiveDeviceError),
            (spotipy.SpotifyException(400, -1, "NO_ACTIVE_DEVICE"), NoActiveDeviceError),
            (spotipy.SpotifyException(429, -1, "Too many requests"), TransientError),
            (spotipy.SpotifyException(500, -1, "Server error"), TransientError),
            (spotipy.SpotifyException(403, -1, "Premium required"), ProviderError),
            (requests.exceptions.Timeout("slow"), TransientError),
            (RuntimeError("unexpected"), ProviderError),
        ]
        for exc, expected in cases:
            with self.subTest(exc=exc):
                self.assertIsInstance(classify_provider_error(exc), expected)

    def test_playback_errors_pass_through(self) -> None:
        error = PlaybackValidationError("bad uri")

        self.assertIs(classify_provider_error(error), error)


class TestSpotifyPlaybackProvider(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clients: list[Mock] = []
        self.provider = SpotifyPlaybackProvider(self.make_client)

    def make_client(self, access_token: str) -> Mock:
        client = Mock()
        client.token = access_token
        client.devices.return_value = {
            "devices": [
                {"id": "phone", "name": "Pixel", "type": "Smartphone", "is_active": False, "volume_percent": 50},
                {"id": None, "name": "Restricted", "type": "Speaker", "is_active": False},
            ]
        }
        self.clients.append(client)
        return client

    async def test_client_is_reused_per_token(self) -> None:
        first = self.provider.client("a")

        self.assertIs(self.provider.client("a"), first)
        self.assertIsNot(self.provider.client("b"), first)
        self.assertEqual(len(self.clients), 2)

    async def test_devices_skip_entries_without_id(self) -> None:
        devices = await self.provider.devices("a")

        self.assertEqual([d.id for d in devices], ["phone"])
        self.assertEqual(devices[0].volume_percent, 50)

    async def test_commands_map_to_spotipy(self) -> None:
        await self.provider.transfer("a", "phone", force_play=True)
        await self.provider.start_playback("a", device_id="phone", uris=["spotify:track:abc"])
        await self.provider.pause("a", device_id="phone")
        await self.provider.seek("a", 1000, device_id="phone")
        await self.provider.set_volume("a", 40, "phone")

        client = self.clients[0]
        client.transfer_playback.assert_called_once_with(device_id="phone", force_play=True)
        client.start_playback.assert_called_once_with(device_id="phone", uris=["spotify:track:abc"])
        client.pause_playback.assert_called_once_with(device_id="phone")
        client.seek_track.assert_called_once_with(1000, device_id="phone")
        client.volume.assert_called_once_with(40, device_id="phone")
