"""Queue operations on a playback session.

All functions mutate or inspect a ``PlaybackSession`` in place and never touch
the network, so the state machine can apply them before issuing commands.
"""

import random
from collections.abc import Sequence

from spotify_remote_playback.errors import NoPlayableTracksError
from spotify_remote_playback.models import PlaybackSession, RepeatMode, Track

PREVIOUS_RESTART_THRESHOLD_MS = 3000
REPEAT_CYCLE = {
    RepeatMode.OFF: RepeatMode.QUEUE,
    RepeatMode.QUEUE: RepeatMode.TRACK,
    RepeatMode.TRACK: RepeatMode.OFF,
}


def clamp_index(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return max(0, min(index, length - 1))


def select_index(session: PlaybackSession, index: int) -> Track | None:
    """Point the session at ``index`` and reset the position of the new track."""
    session.queue_index = clamp_index(index, len(session.queue))
    session.current_track = session.queue[session.queue_index] if session.queue else None
    session.position = 0
    session.duration = (session.current_track.duration_ms or 0) if session.current_track else 0
    return session.current_track


def replace_queue(session: PlaybackSession, queue: Sequence[Track], index: int = 0) -> Track | None:
    """Install a new queue and make ``queue[index]`` the current track.

    Shuffle is cleared and the given order becomes the one restored when
    shuffle is later turned off.
    """
    session.queue = list(queue)
    session.original_queue = list(queue)
    session.is_shuffle = False
    return select_index(session, index)


def _locate(queue: Sequence[Track], track: Track | None) -> int:
    if track is None:
        return 0
    for i, candidate in enumerate(queue):
        if candidate is track:
            return i
    for i, candidate in enumerate(queue):
        if candidate == track:
            return i
    return 0


def toggle_shuffle(session: PlaybackSession, rng: random.Random | None = None) -> None:
    """Turn shuffle on or off without interrupting the current track.

    Enabling keeps the current track at index 0 and shuffles the rest.
    Disabling restores the saved order and follows the current track into it.
    """
    rng = rng or random.Random()
    if not session.is_shuffle:
        session.original_queue = list(session.queue)
        if session.queue:
            index = clamp_index(session.queue_index, len(session.queue))
            current = session.queue[index]
            rest = session.queue[:index] + session.queue[index + 1 :]
            # random.shuffle is an in-place Fisher-Yates
            rng.shuffle(rest)
            session.queue = [current, *rest]
        session.queue_index = 0
        session.is_shuffle = True
        return

    current = session.queue[session.queue_index] if session.queue else None
    if session.original_queue:
        session.queue = list(session.original_queue)
    session.queue_index = _locate(session.queue, current)
    session.is_shuffle = False


def _playable(track: Track, is_premium: bool) -> bool:
    return is_premium or bool(track.preview_url)


def next_index(session: PlaybackSession, is_premium: bool = True) -> int | None:
    """Index of the track to play after the current one.

    Returns:
        The next index, or None when playback should stop at the end of the queue.

    Raises:
        NoPlayableTracksError: If a non-premium session has no track with a preview source.
    """
    length = len(session.queue)
    if length == 0:
        return None
    if not is_premium and not any(_playable(track, is_premium) for track in session.queue):
        raise NoPlayableTracksError("No playable tracks in the queue")

    if session.repeat_mode is RepeatMode.TRACK and _playable(session.queue[session.queue_index], is_premium):
        return session.queue_index

    # One full pass at most, ending back on the current index
    for step in range(1, length + 1):
        index = session.queue_index + step
        if index >= length:
            if session.repeat_mode is RepeatMode.OFF:
                return None
            index %= length
        if _playable(session.queue[index], is_premium):
            return index
    raise NoPlayableTracksError("No playable tracks in the queue")


def previous_index(session: PlaybackSession) -> int | None:
    """Index to go back to, or None when the current track should restart from 0."""
    if session.position > PREVIOUS_RESTART_THRESHOLD_MS or session.queue_index <= 0 or not session.queue:
        return None
    return session.queue_index - 1


def cycle_repeat(session: PlaybackSession) -> RepeatMode:
    session.repeat_mode = REPEAT_CYCLE[session.repeat_mode]
    return session.repeat_mode
