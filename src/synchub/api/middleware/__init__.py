"""API middleware package."""

from src.synchub.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
