"""Encrypted refresh token storage with rotation history and rate limiting.

Two interchangeable backends implement the same contract: a SQLModel-backed
durable store and a process-local fallback used when the database is
unavailable. ``create_token_repository`` picks one at construction time.

AIDEV-NOTE: The rotation counter update is a read-modify-write without
cross-process locking. Two processes rotating the same user's token at the
same moment can both pass the rate limit. This is an accepted limitation.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import sqlalchemy
from sqlalchemy import exc, text
from sqlmodel import Session, SQLModel, select

from spotify_remote_playback.crypto import TokenCipher
from spotify_remote_playback.errors import NoRefreshTokenError, RateLimitExceededError
from spotify_remote_playback.logger import get_logger
from spotify_remote_playback.models import RotationWindow, TokenRecord, now_ms

HOUR_MS = 60 * 60 * 1000
DEFAULT_HISTORY_LIMIT = 5
DEFAULT_MAX_ROTATIONS_PER_HOUR = 12


def next_rotation_window(window: RotationWindow | None, now: int, max_per_hour: int) -> RotationWindow:
    """Count one more rotation in the rolling one-hour window.

    Raises:
        RateLimitExceededError: If the rotation would exceed ``max_per_hour``.
    """
    if window is None or now - window.window_start > HOUR_MS:
        window = RotationWindow(count=0, window_start=now)
    count = window.count + 1
    if count > max_per_hour:
        raise RateLimitExceededError(f"Refresh token rotation rate exceeded ({max_per_hour} per hour)")
    return RotationWindow(count=count, window_start=window.window_start)


def build_history(existing: TokenRecord, history_limit: int) -> list[str]:
    """Prepend the current encrypted token to the bounded history, newest first."""
    previous = list(existing.history or [])
    if existing.refresh_token_encrypted:
        previous.insert(0, existing.refresh_token_encrypted)
    return previous[:history_limit]


class TokenRepository(ABC):
    """Contract shared by all refresh token backends.

    Attributes:
        cipher: Cipher used to encrypt refresh tokens at rest.
        history_limit: Number of previous encrypted tokens kept per record.
        max_rotations_per_hour: Rotation ceiling within the rolling window.
    """

    def __init__(
        self,
        cipher: TokenCipher,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        max_rotations_per_hour: int = DEFAULT_MAX_ROTATIONS_PER_HOUR,
        clock: Callable[[], int] = now_ms,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cipher = cipher
        self.history_limit = history_limit
        self.max_rotations_per_hour = max_rotations_per_hour
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    @abstractmethod
    def get_by_user(self, user_id: str) -> TokenRecord | None:
        """Return the user's record; the most recently updated one if duplicates exist."""

    @abstractmethod
    def upsert_rotate(
        self,
        user_id: str,
        plain_refresh_token: str | None,
        scope: str | None = None,
        *,
        client_id: str | None = None,
    ) -> TokenRecord:
        """Rotate the refresh token, or update metadata when ``plain_refresh_token`` is None.

        Raises:
            NoRefreshTokenError: If no record exists and no token is given.
            RateLimitExceededError: If the rotation ceiling is reached; nothing is written.
        """

    @abstractmethod
    def revoke(self, user_id: str) -> None:
        """Mark the user's credential revoked and drop the encrypted token. No-op without a record."""

    def decrypt_refresh(self, record: TokenRecord | None) -> str | None:
        """Return the plain refresh token of a record, or None if it holds none."""
        if record is None or not record.refresh_token_encrypted:
            return None
        return self.cipher.decrypt(record.refresh_token_encrypted)

    def _next_fields(
        self,
        existing: TokenRecord | None,
        plain_refresh_token: str | None,
        scope: str | None,
        client_id: str | None,
        now: int,
    ) -> dict[str, Any]:
        """Compute the field values of the next record state without writing anything."""
        is_rotation = bool(plain_refresh_token)

        if existing is None:
            if not is_rotation:
                raise NoRefreshTokenError("Refresh token is required for new token records")
            window = next_rotation_window(None, now, self.max_rotations_per_hour)
            return {
                "refresh_token_encrypted": self.cipher.encrypt(plain_refresh_token),  # type: ignore[arg-type]
                "scope": scope or "",
                "version": 1,
                "history": [],
                "revoked": False,
                "rotation_count": window.count,
                "rotation_window_start": window.window_start,
                "client_id": client_id,
                "created_at": now,
                "updated_at": now,
                "last_rotation_at": now,
            }

        if not is_rotation:
            return {
                "scope": scope or existing.scope,
                "client_id": client_id or existing.client_id,
                "updated_at": now,
            }

        window = next_rotation_window(existing.rotation_window, now, self.max_rotations_per_hour)
        return {
            "refresh_token_encrypted": self.cipher.encrypt(plain_refresh_token),  # type: ignore[arg-type]
            "scope": scope or existing.scope,
            "version": existing.version + 1,
            "history": build_history(existing, self.history_limit),
            "revoked": False,
            "rotation_count": window.count,
            "rotation_window_start": window.window_start,
            "client_id": client_id or existing.client_id,
            "updated_at": now,
            "last_rotation_at": now,
        }


class SQLTokenRepository(TokenRepository):
    """Durable token repository backed by SQLModel.

    Attributes:
        db_engine: SQLAlchemy engine for token persistence.
    """

    def __init__(self, db_engine: sqlalchemy.Engine, cipher: TokenCipher, **kwargs: Any) -> None:
        super().__init__(cipher, **kwargs)
        self.db_engine = db_engine
        # AIDEV-NOTE: Ensure database tables exist before use
        SQLModel.metadata.create_all(self.db_engine)

    @staticmethod
    def _latest(session: Session, user_id: str) -> TokenRecord | None:
        statement = (
            select(TokenRecord)
            .where(TokenRecord.user_id == user_id)
            .order_by(TokenRecord.updated_at.desc(), TokenRecord.id.desc())  # type: ignore[attr-defined,union-attr]
            .limit(1)
        )
        return session.exec(statement).first()

    def get_by_user(self, user_id: str) -> TokenRecord | None:
        with Session(self.db_engine) as session:
            return self._latest(session, user_id)

    def upsert_rotate(
        self,
        user_id: str,
        plain_refresh_token: str | None,
        scope: str | None = None,
        *,
        client_id: str | None = None,
    ) -> TokenRecord:
        with Session(self.db_engine) as session:
            existing = self._latest(session, user_id)
            fields = self._next_fields(existing, plain_refresh_token, scope, client_id, self.clock())
            if existing is None:
                record = TokenRecord(user_id=user_id, **fields)
            else:
                record = existing
                for key, value in fields.items():
                    setattr(record, key, value)
            session.add(record)
            session.commit()
            session.refresh(record)
            self.logger.debug("Stored token record v%d for user %s", record.version, user_id)
            return record

    def revoke(self, user_id: str) -> None:
        with Session(self.db_engine) as session:
            latest = self._latest(session, user_id)
            if latest is None:
                return
            records = session.exec(select(TokenRecord).where(TokenRecord.user_id == user_id)).all()
            for record in records:
                record.revoked = True
                record.refresh_token_encrypted = None
                session.add(record)
            latest.updated_at = self.clock()
            session.commit()
        self.logger.info("Revoked refresh token for user %s", user_id)


class InMemoryTokenRepository(TokenRepository):
    """Process-local token repository used when the durable store is unavailable."""

    def __init__(self, cipher: TokenCipher, **kwargs: Any) -> None:
        super().__init__(cipher, **kwargs)
        self._records: dict[str, TokenRecord] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    @staticmethod
    def _copy(record: TokenRecord) -> TokenRecord:
        return TokenRecord(**record.model_dump())

    def get_by_user(self, user_id: str) -> TokenRecord | None:
        with self._lock:
            record = self._records.get(user_id)
            return self._copy(record) if record else None

    def upsert_rotate(
        self,
        user_id: str,
        plain_refresh_token: str | None,
        scope: str | None = None,
        *,
        client_id: str | None = None,
    ) -> TokenRecord:
        with self._lock:
            existing = self._records.get(user_id)
            fields = self._next_fields(existing, plain_refresh_token, scope, client_id, self.clock())
            if existing is None:
                record = TokenRecord(id=self._next_id, user_id=user_id, **fields)
                self._next_id += 1
            else:
                record = TokenRecord(**{**existing.model_dump(), **fields})
            self._records[user_id] = record
            return self._copy(record)

    def revoke(self, user_id: str) -> None:
        with self._lock:
            existing = self._records.get(user_id)
            if existing is None:
                return
            self._records[user_id] = TokenRecord(
                **{
                    **existing.model_dump(),
                    "revoked": True,
                    "refresh_token_encrypted": None,
                    "updated_at": self.clock(),
                }
            )
        self.logger.info("Revoked refresh token for user %s", user_id)


def create_token_repository(
    db_engine: sqlalchemy.Engine | None,
    cipher: TokenCipher,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> TokenRepository:
    """Return the durable repository if its database answers, else the in-memory fallback.

    Args:
        db_engine: Engine of the durable store, or None to force the fallback.
        cipher: Cipher for refresh tokens at rest.
        logger: Logger for backend selection messages.
        **kwargs: Limits and clock forwarded to the repository.
    """
    logger = logger or get_logger(__name__)
    if db_engine is not None:
        try:
            with db_engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return SQLTokenRepository(db_engine, cipher, logger=logger, **kwargs)
        except exc.SQLAlchemyError as e:
            logger.warning("Durable token store unavailable, using process memory: %s", e)
    return InMemoryTokenRepository(cipher, logger=logger, **kwargs)
