"""HTTP API for the dispatcher."""

from dispatcher.api.server import create_app

__all__ = ["create_app"]
