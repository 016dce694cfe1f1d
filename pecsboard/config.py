from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional

from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

DEFAULT_MAX_BOARDS = 5
DEFAULT_MAX_CARDS = 100


@dataclass(frozen=True)
class EndpointLimit:
    """Admission limits for one endpoint.

    ``max_requests`` per ``window_seconds`` per user, plus optional per-user
    and global caps per UTC calendar day.
    """

    max_requests: int
    window_seconds: float
    daily_max: Optional[int] = None
    global_daily_max: Optional[int] = None


ENDPOINT_LIMITS: Dict[str, EndpointLimit] = {
    "create-board": EndpointLimit(10, 60),
    "update-board": EndpointLimit(30, 60),
    "delete-board": EndpointLimit(10, 60),
    "clone-board": EndpointLimit(5, 60, daily_max=20, global_daily_max=2000),
    "create-card": EndpointLimit(60, 60),
    "batch-cards": EndpointLimit(10, 60, daily_max=50),
    "import-cards": EndpointLimit(20, 60),
    "reorder-cards": EndpointLimit(60, 60),
    "update-card": EndpointLimit(60, 60),
    "delete-card": EndpointLimit(60, 60),
    "like": EndpointLimit(30, 60),
    "comment": EndpointLimit(10, 60, daily_max=200),
    "admin-settings": EndpointLimit(20, 60),
}


def _csv(value: Optional[str], lower: bool = False) -> FrozenSet[str]:
    if not value:
        return frozenset()
    items = (v.strip() for v in value.split(","))
    return frozenset(v.lower() if lower else v for v in items if v)


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    parsed = int(value)
    return parsed if parsed > 0 else None


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./pecsboard.db"
    admin_user_ids: FrozenSet[str] = frozenset()
    admin_emails: FrozenSet[str] = frozenset()
    # Env overrides; when unset the app_settings table and then the defaults apply.
    max_boards_per_user: Optional[int] = None
    max_cards_per_board: Optional[int] = None
    blob_api_url: str = "https://blob.vercel-storage.com"
    blob_token: Optional[str] = None
    blob_host_suffix: str = ".blob.vercel-storage.com"
    blob_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 30.0
    rate_limit_cleanup_probability: float = 0.05
    log_level: str = "INFO"
    endpoint_limits: Dict[str, EndpointLimit] = field(default_factory=lambda: dict(ENDPOINT_LIMITS))

    def limit_for(self, endpoint: str) -> EndpointLimit:
        return self.endpoint_limits[endpoint]


def load_settings() -> Settings:
    request_timeout = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    blob_timeout = float(os.getenv("BLOB_TIMEOUT_SECONDS", "10"))
    # Blob calls must give up before the caller's own request does.
    if blob_timeout >= request_timeout:
        blob_timeout = request_timeout / 2
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./pecsboard.db"),
        admin_user_ids=_csv(os.getenv("ADMIN_USER_IDS")),
        admin_emails=_csv(os.getenv("ADMIN_EMAILS"), lower=True),
        max_boards_per_user=_int_or_none(os.getenv("MAX_BOARDS_PER_USER")),
        max_cards_per_board=_int_or_none(os.getenv("MAX_CARDS_PER_BOARD")),
        blob_api_url=os.getenv("BLOB_API_URL", "https://blob.vercel-storage.com"),
        blob_token=os.getenv("BLOB_TOKEN") or None,
        blob_host_suffix=os.getenv("BLOB_HOST_SUFFIX", ".blob.vercel-storage.com"),
        blob_timeout_seconds=blob_timeout,
        request_timeout_seconds=request_timeout,
        rate_limit_cleanup_probability=float(os.getenv("RATE_LIMIT_CLEANUP_PROBABILITY", "0.05")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
