"""Client-side playback state machine.

Owns the queue, shuffle and repeat state and the displayed position. Commands
go through the adapter; the adapter's status reports drive state transitions
and position reconciliation.

States: ``idle -> loading -> {playing, paused} -> stopped``, with ``error``
reachable from any command that fails.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence

from spotify_remote_playback import play_queue
from spotify_remote_playback.adapter import RemotePlaybackAdapter
from spotify_remote_playback.config import PlaybackSettings
from spotify_remote_playback.errors import NoPlayableTracksError, PlaybackError
from spotify_remote_playback.history import PlaybackHistoryLog
from spotify_remote_playback.logger import get_logger
from spotify_remote_playback.models import (
    PlaybackSession,
    PlaybackSnapshot,
    PlaybackStatus,
    PlayerStatus,
    RepeatMode,
    SnapshotTrack,
    Track,
    now_ms,
)
from spotify_remote_playback.reconciliation import PositionReconciler, clamp_position
from spotify_remote_playback.snapshot_store import SnapshotStore

SNAPSHOT_TRACK_FIELDS = {"id", "name", "album", "artists", "uri"}


class PlaybackStateMachine:
    """Playback state of one client session.

    Attributes:
        adapter: Command surface and status source.
        user_id: Listener, used for history and snapshots.
        session: Queue, track and position state.
        state: Current player state.
        is_playing: Last known playing flag.
        pending_seek_ms: Seek target not yet confirmed by a status report.
        last_confirmed_position: Last position reported by the server.
        last_error: Error of the last failed command.
    """

    def __init__(
        self,
        adapter: RemotePlaybackAdapter,
        history: PlaybackHistoryLog | None = None,
        snapshot_store: SnapshotStore | None = None,
        is_premium: Callable[[], bool] = lambda: True,
        settings: PlaybackSettings | None = None,
        reconciler: PositionReconciler | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.adapter = adapter
        self.user_id = adapter.user_id
        self.history = history
        self.snapshot_store = snapshot_store
        self.is_premium = is_premium
        self.settings = settings or PlaybackSettings()
        self.reconciler = reconciler or PositionReconciler()
        self.clock = clock
        self.rng = rng or random.Random()
        self.logger = logger or get_logger(__name__)

        self.session = PlaybackSession()
        self.state = PlayerStatus.IDLE
        self.is_playing = False
        self.pending_seek_ms: int | None = None
        self.last_confirmed_position = 0
        self.last_error: PlaybackError | None = None

        self._last_tick: float | None = None
        self._ticker_task: asyncio.Task | None = None
        self._subscription = adapter.on_status(self.handle_status)

    # --- Queue ---

    async def replace_queue(self, queue: Sequence[Track], index: int = 0, auto_play: bool = True) -> None:
        """Install a new queue and load ``queue[index]``."""
        await self._close_history()
        track = play_queue.replace_queue(self.session, queue, index)
        if track is not None:
            await self.load(track, auto_play=auto_play)

    async def next_track(self) -> None:
        try:
            index = play_queue.next_index(self.session, self.is_premium())
        except NoPlayableTracksError as e:
            self._fail(e)
            return
        if index is None:
            await self.stop()
            return
        track = play_queue.select_index(self.session, index)
        await self.load(track)

    async def previous_track(self) -> None:
        index = play_queue.previous_index(self.session)
        if index is None:
            await self.seek(0)
            return
        track = play_queue.select_index(self.session, index)
        await self.load(track)

    async def toggle_shuffle(self) -> None:
        play_queue.toggle_shuffle(self.session, self.rng)
        await self.persist_snapshot()

    async def cycle_repeat(self) -> RepeatMode:
        mode = play_queue.cycle_repeat(self.session)
        await self.persist_snapshot()
        return mode

    # --- Transport ---

    async def load(self, track: Track | None = None, auto_play: bool = True) -> bool:
        """Load a track on the remote device.

        Args:
            track: Track to load, the current track when omitted.
            auto_play: Start playing once loaded.

        Returns:
            Whether the adapter accepted the load.
        """
        track = track or self.session.current_track
        if track is None:
            return False
        await self._close_history()

        self.session.current_track = track
        self.session.position = 0
        self.session.duration = track.duration_ms or 0
        self.pending_seek_ms = None
        self.last_confirmed_position = 0
        self.is_playing = False
        self.state = PlayerStatus.LOADING

        if not await self._run(self.adapter.load(track, auto_play=auto_play)):
            return False

        self.session.playback_device_id = self.adapter.device_id
        self.session.playback_device_name = self.adapter.device_name
        await self._open_history(track)
        await self.persist_snapshot()
        return True

    async def play(self) -> None:
        track = self.session.current_track
        if track is None:
            return
        if self.adapter.current_track != track:
            # Restored or stopped session: nothing is loaded remotely yet
            resume_at = self.session.position
            if await self.load(track) and resume_at > 0:
                await self.seek(resume_at)
            return
        if await self._run(self.adapter.play()):
            self._set_playing(True)

    async def pause(self) -> None:
        if await self._run(self.adapter.pause()):
            self._set_playing(False)
            await self.persist_snapshot()

    async def stop(self) -> None:
        """Stop playback and tear the session down to an empty queue."""
        await self._close_history()
        ok = await self._run(self.adapter.stop())
        self._stop_ticker()
        self.is_playing = False
        self.pending_seek_ms = None
        self.session.current_track = None
        self.session.queue = []
        self.session.original_queue = []
        self.session.queue_index = 0
        self.session.is_shuffle = False
        self.session.position = 0
        self.session.duration = 0
        if ok:
            self.state = PlayerStatus.STOPPED

    async def seek(self, position_ms: int) -> bool:
        """Seek to ``position_ms``, reverting the display if the adapter fails."""
        target = clamp_position(position_ms, self.session.duration)
        self.session.position = target
        self.pending_seek_ms = target
        self._last_tick = self.clock()
        try:
            await self.adapter.seek(target)
        except PlaybackError as e:
            self.logger.warning("Seek to %d ms failed (%s): %s", target, e.code, e.message)
            self.last_error = e
            self.pending_seek_ms = None
            self.session.position = self.last_confirmed_position
            return False
        return True

    async def set_volume(self, volume: float) -> None:
        await self._run(self.adapter.set_volume(volume))

    # --- Seek gesture ---

    def on_sliding_start(self) -> None:
        self.tick()
        self.session.seek_in_progress = True

    async def on_sliding_complete(self, value: int) -> bool:
        self.session.seek_in_progress = False
        return await self.seek(value)

    # --- Status and position ---

    async def handle_status(self, status: PlaybackStatus) -> None:
        """Apply one status report from the adapter."""
        if self.state in (PlayerStatus.IDLE, PlayerStatus.STOPPED):
            return
        if status.duration_millis > 0:
            self.session.duration = status.duration_millis
        server = status.position_millis

        if self.pending_seek_ms is not None:
            if self.reconciler.confirms_seek(self.pending_seek_ms, server):
                self.pending_seek_ms = None
                self.last_confirmed_position = server
        else:
            self.last_confirmed_position = server
            if not self.session.seek_in_progress:
                local = self.session.position
                position = self.reconciler.reconcile(local, server) if status.is_playing else server
                self.session.position = clamp_position(position, self.session.duration)

        if status.did_just_finish and self.state is PlayerStatus.PLAYING:
            await self._close_history(status.position_millis, status.duration_millis)
            await self.next_track()
            return
        self._set_playing(status.is_playing)

    def tick(self) -> None:
        """Advance the displayed position by the time elapsed since the last tick."""
        now = self.clock()
        last, self._last_tick = self._last_tick, now
        if last is None or not self.is_playing or self.session.seek_in_progress:
            return
        elapsed_ms = (now - last) * 1000
        self.session.position = clamp_position(self.session.position + elapsed_ms, self.session.duration)

    # --- Snapshot ---

    def snapshot(self) -> PlaybackSnapshot:
        return PlaybackSnapshot(
            queue=[SnapshotTrack(**track.model_dump(include=SNAPSHOT_TRACK_FIELDS)) for track in self.session.queue],
            queue_index=self.session.queue_index,
            position=self.session.position,
            repeat_mode=self.session.repeat_mode,
            is_shuffle=self.session.is_shuffle,
            timestamp=now_ms(),
        )

    async def persist_snapshot(self) -> None:
        if self.snapshot_store is None:
            return
        try:
            await asyncio.to_thread(self.snapshot_store.save_snapshot, self.user_id, self.snapshot())
        except Exception as e:
            self.logger.warning("Could not persist playback snapshot: %s", e)

    async def restore_snapshot(self) -> bool:
        """Restore queue and position from the stored snapshot without resuming playback."""
        if self.snapshot_store is None:
            return False
        snapshot = await asyncio.to_thread(self.snapshot_store.load_snapshot, self.user_id)
        if snapshot is None or not snapshot.queue:
            return False

        queue = [Track(**track.model_dump()) for track in snapshot.queue]
        self.session.queue = queue
        self.session.original_queue = list(queue)
        self.session.queue_index = play_queue.clamp_index(snapshot.queue_index, len(queue))
        self.session.current_track = queue[self.session.queue_index]
        self.session.duration = self.session.current_track.duration_ms or 0
        self.session.position = clamp_position(snapshot.position, self.session.duration)
        self.session.repeat_mode = snapshot.repeat_mode
        self.session.is_shuffle = snapshot.is_shuffle
        self.last_confirmed_position = self.session.position
        self.is_playing = False
        self.state = PlayerStatus.PAUSED
        self.logger.info("Restored %d queued tracks for user %s", len(queue), self.user_id)
        return True

    def close(self) -> None:
        """Detach from the adapter and stop the ticker."""
        self._subscription.unsubscribe()
        self._stop_ticker()

    # --- Internals ---

    async def _run(self, command: Awaitable[None]) -> bool:
        try:
            await command
        except PlaybackError as e:
            self._fail(e)
            return False
        self.last_error = None
        return True

    def _fail(self, error: PlaybackError) -> None:
        self.logger.warning("Playback command failed (%s): %s", error.code, error.message)
        self.last_error = error
        self.state = PlayerStatus.ERROR
        self.is_playing = False
        self._stop_ticker()

    def _set_playing(self, playing: bool) -> None:
        self.is_playing = playing
        self.state = PlayerStatus.PLAYING if playing else PlayerStatus.PAUSED
        if playing:
            self._start_ticker()
        else:
            self._stop_ticker()

    def _start_ticker(self) -> None:
        if self._ticker_task is not None and not self._ticker_task.done():
            return
        self._last_tick = self.clock()
        self._ticker_task = asyncio.get_running_loop().create_task(self._tick_loop())

    def _stop_ticker(self) -> None:
        task, self._ticker_task = self._ticker_task, None
        if task is not None:
            task.cancel()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.tick_interval)
            self.tick()

    async def _open_history(self, track: Track) -> None:
        if self.history is None:
            return
        try:
            self.session.history_id = await self.history.start(self.user_id, track)
        except Exception as e:
            self.logger.warning("Could not open playback history entry: %s", e)
            self.session.history_id = None

    async def _close_history(self, position_ms: int | None = None, duration_ms: int | None = None) -> None:
        history_id, self.session.history_id = self.session.history_id, None
        if self.history is None or history_id is None:
            return
        position = self.session.position if position_ms is None else position_ms
        duration = self.session.duration if duration_ms is None else duration_ms
        try:
            await self.history.complete(self.user_id, history_id, position, duration or None)
        except Exception as e:
            self.logger.warning("Could not complete playback history entry %s: %s", history_id, e)
