"""
API dependencies for FastAPI endpoints.
"""

from fastapi import Request

from subscription_tracker.api.context import ServiceContext


def get_context(request: Request) -> ServiceContext:
    """Components the application was created with."""
    return request.app.state.context
