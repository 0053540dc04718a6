"""HTTP application for the hosts aggregator."""

from .app import create_app

__all__ = ["create_app"]
