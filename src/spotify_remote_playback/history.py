"""Playback history correlation log.

A history row is opened when a track starts and completed when the listener
reaches the end or moves on. Completion is best effort and never blocks
playback.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

import sqlalchemy
from sqlalchemy import exc
from sqlmodel import Session, SQLModel

from spotify_remote_playback.logger import get_logger
from spotify_remote_playback.models import PlaybackHistory, Track, now_ms

COMPLETION_TOLERANCE_MS = 1000
DEFAULT_SOURCE = "spotify_full"


class PlaybackHistoryLog(Protocol):
    async def start(self, user_id: str, track: Track, source: str = DEFAULT_SOURCE) -> str: ...

    async def complete(self, user_id: str, history_id: str, position_ms: int, duration_ms: int | None) -> None: ...


def completion_fields(position_ms: int, duration_ms: int | None) -> tuple[int, bool]:
    """Return ``(duration_played_ms, completed)`` for a finished playback."""
    position = max(0, position_ms)
    if not duration_ms or duration_ms <= 0:
        return position, False
    return min(position, duration_ms), position >= duration_ms - COMPLETION_TOLERANCE_MS


class SQLPlaybackHistoryLog:
    """History log stored in the ``playbackhistory`` table.

    Attributes:
        db_engine: Synchronous SQLAlchemy engine, used from worker threads.
    """

    def __init__(
        self,
        db_engine: sqlalchemy.Engine,
        clock: Callable[[], int] = now_ms,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db_engine = db_engine
        self.clock = clock
        self.logger = logger or get_logger(__name__)
        SQLModel.metadata.create_all(self.db_engine)

    async def start(self, user_id: str, track: Track, source: str = DEFAULT_SOURCE) -> str:
        return await asyncio.to_thread(self._start, user_id, track, source)

    async def complete(self, user_id: str, history_id: str, position_ms: int, duration_ms: int | None) -> None:
        await asyncio.to_thread(self._complete, user_id, history_id, position_ms, duration_ms)

    def _start(self, user_id: str, track: Track, source: str) -> str:
        now = self.clock()
        entry = PlaybackHistory(
            user_id=user_id,
            track_id=track.id,
            track_uri=track.uri,
            track_name=track.name,
            artist_name=", ".join(track.artists),
            playback_source=source,
            started_at=now,
            created_at=now,
            updated_at=now,
        )
        with Session(self.db_engine) as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
        return str(entry.id)

    def _complete(self, user_id: str, history_id: str, position_ms: int, duration_ms: int | None) -> None:
        try:
            row_id = int(history_id)
        except ValueError:
            self.logger.warning("Ignoring malformed history id %r", history_id)
            return
        with Session(self.db_engine) as session:
            entry = session.get(PlaybackHistory, row_id)
            if entry is None or entry.user_id != user_id:
                self.logger.debug("No history entry %s for user %s", history_id, user_id)
                return
            now = self.clock()
            entry.duration_played_ms, entry.completed = completion_fields(position_ms, duration_ms)
            entry.ended_at = now
            entry.updated_at = now
            session.add(entry)
            session.commit()


def create_history_log(
    db_engine: sqlalchemy.Engine | None, logger: logging.Logger | None = None
) -> SQLPlaybackHistoryLog | None:
    """Return the SQL history log, or None when its database cannot be prepared."""
    logger = logger or get_logger(__name__)
    if db_engine is None:
        return None
    try:
        return SQLPlaybackHistoryLog(db_engine, logger=logger)
    except exc.SQLAlchemyError as e:
        logger.warning("Playback history disabled, database unavailable: %s", e)
        return None
