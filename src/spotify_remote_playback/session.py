"""Owned lifecycle of the active playback adapter."""

import logging
from collections.abc import Callable

from spotify_remote_playback.adapter import RemotePlaybackAdapter
from spotify_remote_playback.logger import get_logger

AdapterFactory = Callable[[str], RemotePlaybackAdapter]


class AdapterSession:
    """Holds at most one adapter, so only one poll loop ever runs.

    Attributes:
        factory: Builds a new adapter for a user id.
        adapter: The active adapter, None before ``ensure`` or after ``dispose``.
    """

    def __init__(self, factory: AdapterFactory, logger: logging.Logger | None = None) -> None:
        self.factory = factory
        self.logger = logger or get_logger(__name__)
        self.adapter: RemotePlaybackAdapter | None = None
        self._suspended = False

    def ensure(self, user_id: str) -> RemotePlaybackAdapter:
        """Return the adapter for ``user_id``, replacing the one of another user."""
        if self.adapter is not None and self.adapter.user_id == user_id and not self.adapter.is_disposed:
            return self.adapter
        # Old poll loop must be gone before the new adapter exists
        self.dispose()
        self.logger.debug("Creating playback adapter for user %s", user_id)
        self.adapter = self.factory(user_id)
        if self._suspended:
            self.adapter.suspend_polling()
        return self.adapter

    def dispose(self) -> None:
        if self.adapter is not None:
            self.adapter.dispose()
            self.adapter = None

    def suspend(self) -> None:
        self._suspended = True
        if self.adapter is not None:
            self.adapter.suspend_polling()

    def resume(self) -> None:
        self._suspended = False
        if self.adapter is not None:
            self.adapter.resume_polling()
