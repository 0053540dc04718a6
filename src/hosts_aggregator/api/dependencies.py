"""
Dependency injection for FastAPI endpoints.
"""

from fastapi import Request

from ..service import AggregatorService


def get_service(request: Request) -> AggregatorService:
    """The AggregatorService attached to the application."""
    return request.app.state.service
