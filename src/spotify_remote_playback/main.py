"""Command line entry point for remote playback.

Wires configuration, the token store, the refresh coordinator, the playback
adapter and the playback state machine together and exposes them as typer
commands. Output is rendered with
jinja2 templates shipped in the package.
"""

import asyncio
import pathlib
from dataclasses import dataclass, field
from typing import Annotated, NoReturn

import jinja2
import redis
import typer
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.oauth2 import SpotifyOAuth
from sqlmodel import create_engine

from spotify_remote_playback import config
from spotify_remote_playback.adapter import RemotePlaybackAdapter
from spotify_remote_playback.crypto import TokenCipher
from spotify_remote_playback.errors import PlaybackError
from spotify_remote_playback.history import PlaybackHistoryLog, create_history_log
from spotify_remote_playback.logger import get_logger
from spotify_remote_playback.models import Device, PlayerStatus, RepeatMode, Track
from spotify_remote_playback.provider import SpotifyPlaybackProvider, make_spotify_factory
from spotify_remote_playback.session import AdapterSession
from spotify_remote_playback.session_refresh import SessionRefreshCoordinator
from spotify_remote_playback.snapshot_store import InMemorySnapshotStore, SnapshotStore, create_snapshot_store
from spotify_remote_playback.state_machine import PlaybackStateMachine
from spotify_remote_playback.token_repository import TokenRepository, create_token_repository

app = typer.Typer(help="Control Spotify playback for users whose refresh tokens are stored here.")

ConfigPath = Annotated[pathlib.Path, typer.Option("--config", envvar="SPOTIFY_REMOTE_CONFIG_PATH")]
UserId = Annotated[str, typer.Argument(help="User whose credential is used.")]


@dataclass
class Runtime:
    """Dependencies container built once per command."""

    config: config.AppConfig
    repository: TokenRepository
    coordinator: SessionRefreshCoordinator
    session: AdapterSession
    template_env: jinja2.Environment
    snapshot_store: SnapshotStore = field(default_factory=InMemorySnapshotStore)
    history: PlaybackHistoryLog | None = None

    def render(self, template_name: str, **context: object) -> str:
        return self.template_env.get_template(template_name).render(**context)

    def build_player(self, user_id: str) -> PlaybackStateMachine:
        """Create the playback state machine for a user on the session's adapter."""
        return PlaybackStateMachine(
            self.session.ensure(user_id),
            history=self.history,
            snapshot_store=self.snapshot_store,
            is_premium=lambda: self.coordinator.is_premium(user_id),
            settings=self.config.playback,
        )


def make_template_env() -> jinja2.Environment:
    return jinja2.Environment(
        loader=jinja2.PackageLoader("spotify_remote_playback", "templates"),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def build_runtime(config_path: pathlib.Path) -> Runtime:
    """Build all components from the YAML configuration and environment.

    Args:
        config_path: Path to the YAML configuration file.
    """
    logger = get_logger()
    config_obj = config.load_config(config_path)

    db_engine = create_engine(config_obj.token_store.database_url)
    cipher = TokenCipher.from_hex(config_obj.encryption.encryption_key.get_secret_value())
    repository = create_token_repository(
        db_engine,
        cipher,
        logger=logger,
        history_limit=config_obj.token_store.history_limit,
        max_rotations_per_hour=config_obj.token_store.max_rotations_per_hour,
    )

    # AIDEV-NOTE: Refresh tokens live in the token repository; spotipy's own cache stays in memory
    sp_oauth = SpotifyOAuth(
        client_id=config_obj.spotify.client_id,
        client_secret=config_obj.spotify.client_secret,
        redirect_uri=config_obj.spotify.redirect_uri,
        scope=config_obj.spotify.scope,
        cache_handler=MemoryCacheHandler(),
    )
    spotify_factory = make_spotify_factory(config_obj.playback)
    coordinator = SessionRefreshCoordinator(
        repository,
        sp_oauth,
        client_id=config_obj.spotify.client_id,
        spotify_factory=spotify_factory,
        logger=logger,
    )

    provider = SpotifyPlaybackProvider(spotify_factory)
    snapshot_store = create_snapshot_store(redis.from_url(config_obj.redis.url), logger=logger)

    def adapter_factory(user_id: str) -> RemotePlaybackAdapter:
        return RemotePlaybackAdapter(
            user_id,
            coordinator,
            provider,
            snapshot_store=snapshot_store,
            settings=config_obj.playback,
            logger=logger,
        )

    return Runtime(
        config=config_obj,
        repository=repository,
        coordinator=coordinator,
        session=AdapterSession(adapter_factory, logger=logger),
        template_env=make_template_env(),
        snapshot_store=snapshot_store,
        history=create_history_log(db_engine, logger=logger),
    )


def _fail(error: PlaybackError) -> NoReturn:
    typer.echo(f"{error.code}: {error.message}", err=True)
    raise typer.Exit(code=1)


def _track(uri: str) -> Track:
    return Track(id=uri.rsplit(":", 1)[-1], uri=uri)


@app.command("store-token")
def store_token(
    user_id: UserId,
    refresh_token: Annotated[str, typer.Argument(help="Refresh token issued by the OAuth code exchange.")],
    config_path: ConfigPath,
    scope: Annotated[str, typer.Option(help="Granted scopes.")] = "",
) -> None:
    """Store (or rotate) the refresh token of a user."""
    runtime = build_runtime(config_path)
    try:
        record = runtime.repository.upsert_rotate(
            user_id, refresh_token, scope or runtime.config.spotify.scope, client_id=runtime.config.spotify.client_id
        )
    except PlaybackError as e:
        _fail(e)
    typer.echo(f"Stored refresh token for {user_id} (version {record.version})")


@app.command()
def revoke(user_id: UserId, config_path: ConfigPath) -> None:
    """Revoke the stored refresh token of a user."""
    build_runtime(config_path).repository.revoke(user_id)
    typer.echo(f"Revoked refresh token for {user_id}")


@app.command()
def refresh(user_id: UserId, config_path: ConfigPath) -> None:
    """Exchange the stored refresh token for a new access token."""
    runtime = build_runtime(config_path)
    try:
        result = asyncio.run(runtime.coordinator.refresh(user_id))
    except PlaybackError as e:
        _fail(e)
    typer.echo(runtime.render("refresh.j2", user_id=user_id, result=result))


@app.command()
def devices(user_id: UserId, config_path: ConfigPath) -> None:
    """List the user's playback devices."""
    runtime = build_runtime(config_path)

    async def run() -> list[Device]:
        return await runtime.session.ensure(user_id).list_devices()

    try:
        found = asyncio.run(run())
    except PlaybackError as e:
        _fail(e)
    finally:
        runtime.session.dispose()
    typer.echo(runtime.render("devices.j2", devices=found))


@app.command()
def play(
    user_id: UserId,
    track_uri: Annotated[str, typer.Argument(help="spotify:track:<id> or spotify:episode:<id>.")],
    config_path: ConfigPath,
    device_id: Annotated[str | None, typer.Option(help="Target device, resolved automatically if omitted.")] = None,
) -> None:
    """Play a track on one of the user's devices."""
    runtime = build_runtime(config_path)
    track = _track(track_uri)

    async def run() -> RemotePlaybackAdapter:
        adapter = runtime.session.ensure(user_id)
        await adapter.load(track, auto_play=True, device_id=device_id)
        return adapter

    try:
        adapter = asyncio.run(run())
    except PlaybackError as e:
        _fail(e)
    finally:
        runtime.session.dispose()
    typer.echo(f"Playing {track_uri} on {adapter.device_name or adapter.device_id}")


@app.command()
def pause(user_id: UserId, config_path: ConfigPath) -> None:
    """Pause playback."""
    runtime = build_runtime(config_path)

    async def run() -> None:
        await runtime.session.ensure(user_id).pause()

    try:
        asyncio.run(run())
    except PlaybackError as e:
        _fail(e)
    finally:
        runtime.session.dispose()
    typer.echo("Paused")


@app.command()
def status(user_id: UserId, config_path: ConfigPath) -> None:
    """Show what is currently playing."""
    runtime = build_runtime(config_path)

    async def run() -> dict | None:
        return await runtime.session.ensure(user_id).current_playback()

    try:
        state = asyncio.run(run())
    except PlaybackError as e:
        _fail(e)
    finally:
        runtime.session.dispose()
    typer.echo(runtime.render("status.j2", state=state))


async def _follow(player: PlaybackStateMachine, interval: float) -> None:
    """Report track changes until the queue ends or a command fails."""
    current = None
    while player.state not in (PlayerStatus.STOPPED, PlayerStatus.ERROR):
        track = player.session.current_track
        if track is not None and track is not current:
            current = track
            typer.echo(f"Now playing {track.name or track.uri}")
        await asyncio.sleep(interval)


@app.command("queue")
def queue_tracks(
    user_id: UserId,
    track_uris: Annotated[list[str], typer.Argument(help="Tracks to play in order.")],
    config_path: ConfigPath,
    shuffle: Annotated[bool, typer.Option(help="Shuffle the tracks after the first one.")] = False,
    repeat: Annotated[RepeatMode, typer.Option(help="Repeat behaviour at the end of a track.")] = RepeatMode.OFF,
) -> None:
    """Play a list of tracks and follow playback until the queue ends."""
    runtime = build_runtime(config_path)
    tracks = [_track(uri) for uri in track_uris]

    async def run() -> PlaybackStateMachine:
        player = runtime.build_player(user_id)
        try:
            player.session.repeat_mode = repeat
            await player.replace_queue(tracks)
            if shuffle:
                await player.toggle_shuffle()
            await _follow(player, runtime.config.playback.poll_interval)
        finally:
            player.close()
        return player

    try:
        player = asyncio.run(run())
    finally:
        runtime.session.dispose()
    if player.state is PlayerStatus.ERROR and player.last_error is not None:
        _fail(player.last_error)
    typer.echo("Queue finished")


@app.command()
def resume(user_id: UserId, config_path: ConfigPath) -> None:
    """Restore the saved queue and continue where playback stopped."""
    runtime = build_runtime(config_path)

    async def run() -> PlaybackStateMachine | None:
        player = runtime.build_player(user_id)
        try:
            if not await player.restore_snapshot():
                return None
            await player.play()
        finally:
            player.close()
        return player

    try:
        player = asyncio.run(run())
    finally:
        runtime.session.dispose()
    if player is None:
        typer.echo("Nothing to resume.")
        return
    if player.state is PlayerStatus.ERROR and player.last_error is not None:
        _fail(player.last_error)
    track = player.session.current_track
    typer.echo(f"Resumed {track.name or track.uri} at {player.session.position // 1000}s")


if __name__ == "__main__":
    app()
