"""aiohttp application exposing settlement and checkout streams."""

from xsettle.server.app import create_app

__all__ = ["create_app"]
