"""Observability module for structured logging."""

from .logging import (
    ConnectionContext,
    connection_id_var,
    get_logger,
    node_var,
    setup_logging,
)

__all__ = [
    # Setup
    "setup_logging",
    "get_logger",
    # Context
    "ConnectionContext",
    "connection_id_var",
    "node_var",
]
