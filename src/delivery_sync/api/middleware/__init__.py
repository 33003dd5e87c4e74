"""API middleware package."""

from src.delivery_sync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
