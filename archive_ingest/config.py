"""Configuration objects and constants for the ingestion pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko)"
    " Chrome/130.0.0.0 Safari/537.36"
)
WAYBACK_HOST = "web.archive.org"
WAYBACK_ROOT = f"https://{WAYBACK_HOST}/web"
CDX_ENDPOINT = f"https://{WAYBACK_HOST}/cdx/search/cdx"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry schedule applied to every fetch candidate."""

    max_attempts: int = 3
    backoff_seconds: float = 0.3
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay(self, attempt: int) -> float:
        """Linear backoff: the n-th failed attempt waits n * backoff_seconds."""
        return self.backoff_seconds * attempt

    def wait(self, attempt: int) -> None:
        delay = self.delay(attempt)
        if delay > 0:
            self.sleep(delay)


@dataclass
class IngestConfig:
    """Top-level settings that control fetching, caching and output locations."""

    output_root: Path = Path("public")
    data_root: Path = Path("data")
    cache_root: Path = Path("catch")
    workers: int = 4
    timeout: float = 20.0
    max_attempts: int = 3
    backoff_seconds: float = 0.3
    max_snapshots: int = 5
    discover_snapshots: bool = True
    offline: bool = False
    refresh: bool = False
    user_agent: str = DEFAULT_USER_AGENT

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.max_attempts),
            backoff_seconds=self.backoff_seconds,
        )

    def catalog_path(self, source_id: str) -> Path:
        return self.data_root / "works" / f"{source_id}.json"

    def summary_path(self, source_id: str) -> Path:
        return self.cache_root / source_id / f"{source_id}-scrape-summary.json"
