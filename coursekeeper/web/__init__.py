"""Web interface for Course Keeper."""

from .server import create_app

__all__ = ["create_app"]
