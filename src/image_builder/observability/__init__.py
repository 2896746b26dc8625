"""Logging for the image builder."""

from .logging import build_id_ctx, configure_logging, get_logger, reset_logging

__all__ = [
    "build_id_ctx",
    "configure_logging",
    "get_logger",
    "reset_logging",
]
