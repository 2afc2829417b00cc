"""Logging and error handling setup for the status API."""

from fastapi import FastAPI

from dlwatch.config import Settings
from dlwatch.middleware.error_handler import setup_error_handlers
from dlwatch.middleware.logging import setup_logging


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging and register the JSON error handlers."""
    setup_logging(settings)
    setup_error_handlers(app)
