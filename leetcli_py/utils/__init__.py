"""Utility functions."""

from .backoff import BackoffPolicy
from .log import configure_logging
from .terminal import (
    choose_index,
    format_result_color,
    format_difficulty,
    format_status,
    create_table,
)

__all__ = [
    "BackoffPolicy",
    "configure_logging",
    "choose_index",
    "format_result_color",
    "format_difficulty",
    "format_status",
    "create_table",
]
