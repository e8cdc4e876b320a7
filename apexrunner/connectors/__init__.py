"""Org connections."""

from apexrunner.connectors.platform_connection import (
    PlatformConnection,
    RefreshCallback,
    get_default_connection,
    close_default_connection,
)

__all__ = [
    "PlatformConnection",
    "RefreshCallback",
    "get_default_connection",
    "close_default_connection",
]
