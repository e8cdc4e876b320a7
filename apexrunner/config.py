"""
Runtime configuration.

Settings are loaded from environment variables (and an optional `.env` file)
through pydantic-settings. Import the module-level `settings` singleton:

    from apexrunner.config import settings
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_JSON_BUFFER_SIZE = 256
MIN_JSON_BUFFER_SIZE = 256
MAX_JSON_BUFFER_SIZE = 32_768

DEFAULT_JSON_INDENT: Optional[int] = None
MIN_JSON_INDENT = 0
MAX_JSON_INDENT = 8


class Settings(BaseSettings):
    """Process-wide settings for apexrunner."""

    # Org connection
    SF_INSTANCE_URL: str = ""
    SF_ACCESS_TOKEN: Optional[str] = None
    SF_API_VERSION: str = "61.0"
    SF_USERNAME: Optional[str] = None
    SF_ORG_ID: Optional[str] = None
    SF_USER_ID: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 120.0

    # Streaming
    STREAMING_TIMEOUT_SECONDS: float = 14400.0
    STREAMING_HANDSHAKE_TIMEOUT_SECONDS: float = 30.0
    STREAMING_POLL_INTERVAL_SECONDS: float = 30.0

    # Queries
    # Tooling API limit is 100,000 chars after v48, but the REST uri + headers
    # limit is 16,348 bytes; observed practical ceiling is ~12,400.
    QUERY_CHAR_LIMIT: int = 12_400

    # Raw result files
    RESULTS_JSON_BUFFER_SIZE: Optional[int] = None
    RESULTS_JSON_INDENT: Optional[int] = None
    RESULTS_TMP_DIR: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: Optional[str] = None
    APP_DEBUG: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )


settings = Settings()


@dataclass(frozen=True, slots=True)
class SerializerConfig:
    """
    Buffering and indentation used when writing result JSON incrementally.

    Values outside the supported range fall back to the defaults with a warning.
    """

    buffer_size: int = DEFAULT_JSON_BUFFER_SIZE
    indent: Optional[int] = DEFAULT_JSON_INDENT

    @classmethod
    def from_values(
        cls, buffer_size: Optional[int], indent: Optional[int]
    ) -> "SerializerConfig":
        size = DEFAULT_JSON_BUFFER_SIZE if buffer_size is None else int(buffer_size)
        if size < MIN_JSON_BUFFER_SIZE or size > MAX_JSON_BUFFER_SIZE:
            logger.warning(
                "Buffer size %s is outside of the valid range (%s-%s). "
                "Using default buffer size of %s.",
                size,
                MIN_JSON_BUFFER_SIZE,
                MAX_JSON_BUFFER_SIZE,
                DEFAULT_JSON_BUFFER_SIZE,
            )
            size = DEFAULT_JSON_BUFFER_SIZE

        json_indent = indent
        if json_indent is not None and (
            json_indent < MIN_JSON_INDENT or json_indent > MAX_JSON_INDENT
        ):
            logger.warning(
                "Json indent %s is outside of the valid range (%s-%s). "
                "Using default json indent of %s.",
                json_indent,
                MIN_JSON_INDENT,
                MAX_JSON_INDENT,
                DEFAULT_JSON_INDENT,
            )
            json_indent = DEFAULT_JSON_INDENT

        return cls(buffer_size=size, indent=json_indent)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "SerializerConfig":
        source = source or settings
        return cls.from_values(
            source.RESULTS_JSON_BUFFER_SIZE, source.RESULTS_JSON_INDENT
        )


def configure_logging(source: Settings | None = None) -> None:
    """Configure root logging from settings (stream handler + optional file)."""
    source = source or settings
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if source.LOG_FILE:
        handlers.append(logging.FileHandler(source.LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, source.LOG_LEVEL.upper(), logging.INFO),
        format=source.LOG_FORMAT,
        handlers=handlers,
    )
    # httpx logs every request at INFO; long-poll connects make that noisy.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
