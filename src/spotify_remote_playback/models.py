"""Data models for remote playback.

SQLModel tables hold what must survive restarts on the backend (refresh token
records and playback history). Plain pydantic models describe the transient
values exchanged between the adapter and the state machine.
"""

import re
import time
from enum import StrEnum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from spotify_remote_playback.errors import PlaybackValidationError

PLAYABLE_URI_PREFIXES = ("spotify:track:", "spotify:episode:")
# AIDEV-NOTE: Provider ids are base62; '-' and '_' only appear in foreign database keys
PROVIDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+$")


class RotationWindow(NamedTuple):
    count: int
    window_start: int


class TokenRecord(SQLModel, table=True):
    """Database model for one user's encrypted refresh token.

    Records are never hard-deleted: revocation nulls the token and keeps the
    rotation history for audit.

    Attributes:
        id: Primary key for the record.
        user_id: Owner of the credential.
        refresh_token_encrypted: ``ivHex:authTagHex:cipherHex`` payload, None once revoked.
        scope: Space-separated scopes granted by the provider.
        version: Incremented on every rotation.
        history: Previous encrypted tokens, newest first, bounded.
        revoked: Whether the provider invalidated the credential.
        rotation_count: Rotations counted in the current window.
        rotation_window_start: Epoch milliseconds the current window started.
        client_id: OAuth client the token was issued to.
        created_at: Epoch milliseconds of creation.
        updated_at: Epoch milliseconds of the last write.
        last_rotation_at: Epoch milliseconds of the last rotation.
    """

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    refresh_token_encrypted: str | None = None
    scope: str = ""
    version: int = 1
    history: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    revoked: bool = False
    rotation_count: int = 0
    rotation_window_start: int = 0
    client_id: str | None = None
    created_at: int = 0
    updated_at: int = 0
    last_rotation_at: int | None = None

    @property
    def rotation_window(self) -> RotationWindow:
        return RotationWindow(self.rotation_count, self.rotation_window_start)


class PlaybackHistory(SQLModel, table=True):
    """Database model for one playback of a track, used for analytics.

    Attributes:
        id: Primary key, handed to clients as the history correlation id.
        user_id: Listener.
        track_id: Provider track id.
        track_uri: Provider URI of the track.
        track_name: Track title at the time of playback.
        artist_name: Comma-separated artist names.
        playback_source: Where playback was started from.
        started_at: Epoch milliseconds playback started.
        ended_at: Epoch milliseconds playback was completed, if ever.
        duration_played_ms: Position reached, bounded by the track duration.
        completed: Whether the listener reached the end of the track.
    """

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    track_id: str
    track_uri: str | None = None
    track_name: str = ""
    artist_name: str = ""
    playback_source: str = "spotify_full"
    started_at: int = 0
    ended_at: int | None = None
    duration_played_ms: int | None = None
    completed: bool = False
    created_at: int = 0
    updated_at: int = 0


class RepeatMode(StrEnum):
    OFF = "off"
    TRACK = "track"
    QUEUE = "queue"


class PlayerStatus(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class Track(BaseModel):
    """A playable item as known to the client.

    Attributes:
        id: Provider track id (or a foreign key, which is rejected at playback time).
        name: Track title.
        album: Album title.
        artists: Artist names.
        uri: Provider URI, preferred over ``id`` when present.
        preview_url: Short preview source, the only playable source for non-premium sessions.
        duration_ms: Track length if known up front.
    """

    id: str
    name: str = ""
    album: str | None = None
    artists: list[str] = []
    uri: str | None = None
    preview_url: str | None = None
    duration_ms: int | None = None

    def playback_uri(self) -> str:
        """Return the provider URI to play, validating its shape.

        Raises:
            PlaybackValidationError: If neither ``uri`` nor ``id`` identifies a provider item.
        """
        uri = self.uri or (f"spotify:track:{self.id}" if self.id else "")
        if not uri.startswith(PLAYABLE_URI_PREFIXES):
            raise PlaybackValidationError(f"Invalid Spotify URI format: {uri!r}")
        item_id = uri.split(":", 2)[2]
        if not PROVIDER_ID_PATTERN.match(item_id):
            raise PlaybackValidationError(f"Invalid track ID format: {uri!r}")
        return uri


class Device(BaseModel):
    """A provider playback device (transient, fetched on demand)."""

    id: str
    name: str
    type: str = ""
    is_active: bool = False
    volume_percent: int | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "Device":
        """Create a Device from a provider ``/me/player/devices`` entry."""
        return cls(
            id=payload["id"],
            name=payload.get("name", ""),
            type=payload.get("type", ""),
            is_active=bool(payload.get("is_active", False)),
            volume_percent=payload.get("volume_percent"),
        )

    @property
    def is_smartphone(self) -> bool:
        return self.type.lower() == "smartphone"


class PlaybackStatus(BaseModel):
    """Normalized status report delivered to the status subscriber."""

    position_millis: int
    duration_millis: int
    is_playing: bool
    did_just_finish: bool = False

    @classmethod
    def from_playback_state(cls, state: dict[str, Any] | None, finish_tolerance_ms: int = 500) -> "PlaybackStatus | None":
        """Normalize a provider ``/me/player`` payload, or None when nothing is loaded."""
        if not state or not state.get("item"):
            return None
        position = state.get("progress_ms") or 0
        duration = state["item"].get("duration_ms") or 0
        playing = bool(state.get("is_playing"))
        finished = not playing and duration > 0 and position >= duration - finish_tolerance_ms
        return cls(
            position_millis=position,
            duration_millis=duration,
            is_playing=playing,
            did_just_finish=finished,
        )


class RefreshResult(BaseModel):
    access_token: str
    refresh_token_record_version: int
    expires_in: int
    is_premium: bool = False


class PlaybackSession(BaseModel):
    """Mutable playback state of one client.

    Attributes:
        current_track: Track being played, None when stopped.
        queue: Tracks in play order.
        queue_index: Index of ``current_track`` in ``queue``.
        original_queue: Order restored when shuffle is turned off.
        repeat_mode: Repeat behaviour at track and queue end.
        is_shuffle: Whether ``queue`` is a shuffled ordering.
        position: Displayed position in milliseconds.
        duration: Track length in milliseconds, 0 while unknown.
        seek_in_progress: Whether the user is dragging the seek control.
        playback_device_id: Device chosen for playback.
        playback_device_name: Name of the chosen device.
        history_id: Open playback history correlation id.
    """

    current_track: Track | None = None
    queue: list[Track] = []
    queue_index: int = 0
    original_queue: list[Track] = []
    repeat_mode: RepeatMode = RepeatMode.OFF
    is_shuffle: bool = False
    position: int = 0
    duration: int = 0
    seek_in_progress: bool = False
    playback_device_id: str | None = None
    playback_device_name: str | None = None
    history_id: str | None = None


class SnapshotTrack(BaseModel):
    id: str
    name: str = ""
    album: str | None = None
    artists: list[str] = []
    uri: str | None = None


class PlaybackSnapshot(BaseModel):
    """Device-local snapshot used to restore a session after a restart.

    Serialized with camelCase keys: ``{queue, queueIndex, position, repeatMode, isShuffle, timestamp}``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    queue: list[SnapshotTrack] = []
    queue_index: int = 0
    position: int = 0
    repeat_mode: RepeatMode = RepeatMode.OFF
    is_shuffle: bool = False
    timestamp: int = 0


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
