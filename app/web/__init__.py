"""Web interface for the audio articles application."""

from .server import create_app

__all__ = ["create_app"]
