"""Configuration helpers for ShiftDrop."""

import logging
import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(slots=True)
class Settings:
    """Runtime configuration values loaded from environment variables."""

    base_url: str = "http://localhost:8000"
    display_timezone: str = "Australia/Sydney"
    outbox_enabled: bool = True
    outbox_poll_seconds: float = 5.0
    outbox_batch_size: int = 10
    log_level: str = "INFO"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.display_timezone)


def load_settings(env_file: str | None = None) -> Settings:
    """Load settings from the environment, optionally from a specific file."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    settings = Settings(
        base_url=os.getenv("SHIFTDROP_BASE_URL", "http://localhost:8000"),
        display_timezone=os.getenv("SHIFTDROP_DISPLAY_TIMEZONE", "Australia/Sydney"),
        outbox_enabled=os.getenv("SHIFTDROP_OUTBOX_ENABLED", "true").lower()
        in _TRUTHY,
        outbox_poll_seconds=float(os.getenv("SHIFTDROP_OUTBOX_POLL_SECONDS", "5")),
        outbox_batch_size=int(os.getenv("SHIFTDROP_OUTBOX_BATCH_SIZE", "10")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    if settings.outbox_batch_size < 1:
        raise RuntimeError("SHIFTDROP_OUTBOX_BATCH_SIZE must be at least 1")
    # raises ZoneInfoNotFoundError for an unknown zone
    ZoneInfo(settings.display_timezone)
    return settings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = ["Settings", "configure_logging", "load_settings"]
