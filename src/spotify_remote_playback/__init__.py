"""Remote Spotify playback control with durable, rotating refresh tokens."""

try:
    from ._version import __version__
except ImportError:
    # Fallback for development installs
    __version__ = "dev"

__all__ = ["__version__"]
