"""Device-local persistence for session restore.

Stores the lightweight playback snapshot and the last device used for each
user. Redis is the deployed backend; the in-memory store serves single-process
clients and tests.
"""

import logging
from abc import ABC, abstractmethod

import redis
from pydantic import BaseModel

from spotify_remote_playback.logger import get_logger
from spotify_remote_playback.models import PlaybackSnapshot

KEY_PREFIX = "spotify_remote_playback"


class DevicePreference(BaseModel):
    id: str
    name: str = ""


class SnapshotStore(ABC):
    """Contract for snapshot and device preference persistence."""

    @abstractmethod
    def save_snapshot(self, user_id: str, snapshot: PlaybackSnapshot) -> None: ...

    @abstractmethod
    def load_snapshot(self, user_id: str) -> PlaybackSnapshot | None: ...

    @abstractmethod
    def save_device(self, user_id: str, device: DevicePreference) -> None: ...

    @abstractmethod
    def load_device(self, user_id: str) -> DevicePreference | None: ...


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self) -> None:
        self._snapshots: dict[str, str] = {}
        self._devices: dict[str, DevicePreference] = {}

    def save_snapshot(self, user_id: str, snapshot: PlaybackSnapshot) -> None:
        self._snapshots[user_id] = snapshot.model_dump_json(by_alias=True)

    def load_snapshot(self, user_id: str) -> PlaybackSnapshot | None:
        raw = self._snapshots.get(user_id)
        return PlaybackSnapshot.model_validate_json(raw) if raw else None

    def save_device(self, user_id: str, device: DevicePreference) -> None:
        self._devices[user_id] = device.model_copy()

    def load_device(self, user_id: str) -> DevicePreference | None:
        device = self._devices.get(user_id)
        return device.model_copy() if device else None


class RedisSnapshotStore(SnapshotStore):
    """Snapshot store keeping JSON documents in Redis.

    Attributes:
        redis_client: Synchronous Redis client.
    """

    def __init__(self, redis_client: redis.Redis) -> None:
        self.redis_client = redis_client

    @staticmethod
    def _key(user_id: str, kind: str) -> str:
        return f"{KEY_PREFIX}:{user_id}:{kind}"

    def save_snapshot(self, user_id: str, snapshot: PlaybackSnapshot) -> None:
        self.redis_client.set(self._key(user_id, "snapshot"), snapshot.model_dump_json(by_alias=True))

    def load_snapshot(self, user_id: str) -> PlaybackSnapshot | None:
        raw = self.redis_client.get(self._key(user_id, "snapshot"))
        if not raw:
            return None
        return PlaybackSnapshot.model_validate_json(raw)  # type: ignore[arg-type]

    def save_device(self, user_id: str, device: DevicePreference) -> None:
        self.redis_client.set(self._key(user_id, "device"), device.model_dump_json())

    def load_device(self, user_id: str) -> DevicePreference | None:
        raw = self.redis_client.get(self._key(user_id, "device"))
        if not raw:
            return None
        return DevicePreference.model_validate_json(raw)  # type: ignore[arg-type]


def create_snapshot_store(redis_client: redis.Redis | None, logger: logging.Logger | None = None) -> SnapshotStore:
    """Return the Redis store if the server answers, else a process-local store."""
    logger = logger or get_logger(__name__)
    if redis_client is not None:
        try:
            redis_client.ping()
            return RedisSnapshotStore(redis_client)
        except redis.exceptions.RedisError as e:
            logger.warning("Redis unavailable, keeping playback snapshots in process memory: %s", e)
    return InMemorySnapshotStore()
