"""Source resolution with protocol, archival-snapshot and proxy fallbacks."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
from bs4 import BeautifulSoup, UnicodeDammit

from .config import CDX_ENDPOINT, WAYBACK_ROOT, IngestConfig, RetryPolicy
from .sources import Source
from .utils import absolute_url, swap_protocol

logger = logging.getLogger("archive_ingest")

ARCHIVE_MODES = ("id_", "im_", "fw_")
TRANSIENT_STATUSES = {408, 425, 429}
WAYBACK_PATTERN = re.compile(
    r"^https?://web\.archive\.org/web/(\d{1,14})([a-z]{2}_)?/(.+)$", re.IGNORECASE
)
CHARSET_PATTERN = re.compile(rb"""<meta[^>]+charset\s*=\s*["']?([\w-]+)""", re.IGNORECASE)
DEFAULT_CLOSED_MARKERS = (
    r"年齢認証",
    r"adult_eula",
    r"この掲示板は閉鎖されています",
    r"掲示板は閉鎖されています",
    r"このスレッドは存在しません",
    r"スレッドがありません",
)
FALLBACK_ENCODINGS = ["utf-8", "cp932", "euc-jp"]

Validator = Callable[["Resolved"], Optional[str]]


class UnresolvableError(RuntimeError):
    """Raised once every candidate location for a resource has been exhausted."""

    def __init__(self, hints: Sequence[str], attempts: List[Tuple[str, str]]):
        self.hints = list(hints)
        self.attempts = attempts
        target = self.hints[0] if self.hints else "<no location>"
        super().__init__(f"Unable to resolve {target} after {len(attempts)} candidate(s)")


class CandidateRejected(Exception):
    """One candidate failed; the resolver moves on to the next."""


@dataclass
class Resolved:
    """Content fetched from a candidate location."""

    content: bytes
    location: str
    content_type: str = ""
    from_cache: bool = False

    @property
    def text(self) -> str:
        return decode_html(self.content, self.content_type)


def _normalize_encoding(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    value = name.strip().lower()
    if re.search(r"shift[_-]?jis|sjis|windows-31j|x-sjis|cp932", value):
        return "cp932"
    if re.search(r"euc[_-]?jp", value):
        return "euc-jp"
    if re.search(r"utf-?8", value):
        return "utf-8"
    return value


def decode_html(content: bytes, content_type: Optional[str] = None) -> str:
    """Decode legacy HTML using meta charset, declared charset, then detection."""
    definite: List[str] = []
    meta = CHARSET_PATTERN.search(content[:4096])
    if meta:
        definite.append(_normalize_encoding(meta.group(1).decode("ascii", "ignore")))
    declared = re.search(r"charset=([^;\s]+)", content_type or "", re.IGNORECASE)
    if declared:
        definite.append(_normalize_encoding(declared.group(1)))
    definite = [enc for enc in dict.fromkeys(definite) if enc]
    dammit = UnicodeDammit(
        content,
        known_definite_encodings=definite,
        user_encodings=FALLBACK_ENCODINGS,
        is_html=True,
    )
    if dammit.unicode_markup is None:
        return content.decode("utf-8", errors="replace")
    return dammit.unicode_markup


def unwrap_wayback(url: str) -> Tuple[str, Optional[str]]:
    """Return the original URL and timestamp behind an archival snapshot URL."""
    match = WAYBACK_PATTERN.match(url or "")
    if not match:
        return url, None
    original = match.group(3)
    if not re.match(r"^https?://", original, re.IGNORECASE):
        original = "http://" + original.lstrip("/")
    timestamp = match.group(1) if len(match.group(1)) >= 4 else None
    return original, timestamp


def wayback_url(timestamp: str, mode: str, original: str) -> str:
    return f"{WAYBACK_ROOT}/{timestamp}{mode}/{original}"


def is_placeholder(text: str, extra_markers: Iterable[str] = ()) -> bool:
    """Detect adult-content gates, closed boards and similar stand-in pages."""
    flattened = re.sub(r"\s+", " ", text)
    for marker in (*DEFAULT_CLOSED_MARKERS, *extra_markers):
        if re.search(marker, flattened, re.IGNORECASE):
            return True
    return False


class PageCache:
    """Run-scoped in-memory map backed by a verbatim on-disk cache per source."""

    def __init__(self, root: Path, source_id: str):
        self.root = Path(root) / source_id
        self._memory: Dict[str, Resolved] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    @staticmethod
    def asset_key(url: str) -> str:
        return "assets/" + hashlib.md5(url.encode("utf-8")).hexdigest()

    @staticmethod
    def page_key(name: str) -> str:
        safe = re.sub(r"[^0-9A-Za-z_.-]+", "-", name).strip("-") or "page"
        if not safe.endswith((".html", ".htm")):
            safe += ".html"
        return "pages/" + safe

    def _paths(self, key: str) -> Tuple[Path, Path]:
        body = self.root / key
        return body, body.with_name(body.name + ".meta.json")

    def key_lock(self, key: str) -> threading.Lock:
        """Lock serializing lookup, fetch and store of one cache key."""
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def remember(self, key: str, resolved: Resolved) -> None:
        with self._lock:
            self._memory[key] = resolved

    def recall(self, key: str) -> Optional[Resolved]:
        with self._lock:
            return self._memory.get(key)

    def load(self, key: str) -> Optional[Resolved]:
        body, meta = self._paths(key)
        if not body.exists():
            return None
        location, content_type = "", ""
        if meta.exists():
            try:
                info = json.loads(meta.read_text(encoding="utf-8"))
                location = info.get("location", "")
                content_type = info.get("contentType", "")
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable cache metadata %s", meta)
        return Resolved(body.read_bytes(), location, content_type, from_cache=True)

    def store(self, key: str, resolved: Resolved) -> None:
        """Write the sidecar, then the body; each lands via ``os.replace``."""
        body, meta = self._paths(key)
        body.parent.mkdir(parents=True, exist_ok=True)
        info = {"location": resolved.location, "contentType": resolved.content_type}
        _replace_atomically(meta, json.dumps(info, ensure_ascii=False, indent=2).encode("utf-8"))
        _replace_atomically(body, resolved.content)


def _replace_atomically(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def build_session(config: IngestConfig) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": config.user_agent,
            "Accept": "text/html,application/xhtml+xml,image/*,*/*;q=0.8",
            "Accept-Language": "ja,en;q=0.8",
        }
    )
    return session


class SourceResolver:
    """Turn location hints into working content by trying ranked candidates."""

    def __init__(
        self,
        source: Source,
        config: IngestConfig,
        session: Optional[requests.Session] = None,
        cache: Optional[PageCache] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.source = source
        self.config = config
        self.session = session or build_session(config)
        self.cache = cache or PageCache(config.cache_root, source.id)
        self.retry = retry or config.retry_policy()
        self._timestamp_lookups: Dict[str, List[str]] = {}
        self._lookup_lock = threading.Lock()

    def discover_timestamps(self, url: str) -> List[str]:
        """Ask the archival index which snapshots exist for a URL, newest first."""
        with self._lookup_lock:
            if url in self._timestamp_lookups:
                return self._timestamp_lookups[url]
        timestamps: List[str] = []
        if self.config.discover_snapshots and not self.config.offline:
            limit = max(1, self.config.max_snapshots)
            try:
                response = self._fetch(
                    CDX_ENDPOINT,
                    expect_page=False,
                    params={
                        "url": url,
                        "output": "json",
                        "filter": "statuscode:200",
                        "fl": "timestamp",
                        "limit": f"-{limit}",
                    },
                )
                rows = json.loads(response.content.decode("utf-8") or "[]")
            except (CandidateRejected, ValueError) as exc:
                logger.debug("Snapshot lookup failed for %s: %s", url, exc)
                rows = []
            for row in rows[1:] if isinstance(rows, list) else []:
                if isinstance(row, list) and row and str(row[0]).isdigit():
                    timestamps.append(str(row[0]))
            timestamps = list(dict.fromkeys(reversed(timestamps)))[:limit]
        with self._lookup_lock:
            self._timestamp_lookups[url] = timestamps
        return timestamps

    def expand_candidates(self, hints: Sequence[str], expect_page: bool = True) -> List[str]:
        """Expand hints into direct, protocol-swapped, archival and proxy candidates."""
        candidates: List[str] = []

        def add(url: Optional[str]) -> None:
            if url and url not in candidates:
                candidates.append(url)

        for hint in hints:
            if not hint:
                continue
            original, hinted_ts = unwrap_wayback(hint)
            add(hint)
            add(original)
            add(swap_protocol(original))
            timestamps = list(self.source.timestamps)
            if hinted_ts:
                timestamps.insert(0, hinted_ts)
            if not timestamps:
                timestamps = self.discover_timestamps(original)
            for timestamp in dict.fromkeys(timestamps):
                for mode in ARCHIVE_MODES:
                    add(wayback_url(timestamp, mode, original))
            if expect_page:
                for proxy in self.source.proxies:
                    add(proxy + original)
        return candidates

    def _fetch(
        self,
        url: str,
        expect_page: bool,
        params: Optional[dict] = None,
        validate: Optional[Validator] = None,
    ) -> Resolved:
        last_reason = "no attempt made"
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                response = self.session.get(url, params=params, timeout=self.config.timeout)
            except requests.RequestException as exc:
                last_reason = f"{type(exc).__name__}: {exc}"
                logger.debug("Attempt %d for %s failed: %s", attempt, url, last_reason)
                if attempt < self.retry.max_attempts:
                    self.retry.wait(attempt)
                continue
            status = response.status_code
            if status >= 500 or status in TRANSIENT_STATUSES:
                last_reason = f"HTTP {status}"
                logger.debug("Attempt %d for %s returned %s", attempt, url, status)
                if attempt < self.retry.max_attempts:
                    self.retry.wait(attempt)
                continue
            if not 200 <= status < 300:
                raise CandidateRejected(f"HTTP {status}")
            content = response.content or b""
            if not content.strip():
                raise CandidateRejected("empty response")
            resolved = Resolved(
                content=content,
                location=getattr(response, "url", None) or url,
                content_type=response.headers.get("Content-Type", ""),
            )
            if expect_page and is_placeholder(resolved.text, self.source.profile.closed_markers):
                raise CandidateRejected("placeholder page")
            problem = validate(resolved) if validate else None
            if problem:
                raise CandidateRejected(problem)
            return resolved
        raise CandidateRejected(last_reason)

    def resolve(
        self,
        hints: Sequence[str],
        cache_key: Optional[str] = None,
        expect_page: bool = True,
        validate: Optional[Validator] = None,
    ) -> Resolved:
        """Return the first candidate that yields acceptable content.

        ``validate`` returns a rejection reason for content that fetched fine
        but is unusable (an HTML error page where an image was expected); the
        candidate is then skipped like any other failure.
        """
        hints = [hint for hint in hints if hint]
        if not cache_key:
            return self._resolve_candidates(hints, expect_page, validate)

        with self.cache.key_lock(cache_key):
            remembered = self.cache.recall(cache_key)
            if remembered is not None:
                return remembered
            if not self.config.refresh:
                cached = self.cache.load(cache_key)
                if cached is not None and validate is not None and validate(cached):
                    logger.debug("Ignoring unusable cached copy of %s", cache_key)
                    cached = None
                if cached is not None:
                    if not cached.location and hints:
                        cached.location = hints[0]
                    self.cache.remember(cache_key, cached)
                    return cached
            resolved = self._resolve_candidates(hints, expect_page, validate)
            self.cache.store(cache_key, resolved)
            self.cache.remember(cache_key, resolved)
            return resolved

    def _resolve_candidates(
        self,
        hints: List[str],
        expect_page: bool,
        validate: Optional[Validator],
    ) -> Resolved:
        if not hints:
            raise UnresolvableError(hints, [])
        if self.config.offline:
            raise UnresolvableError(hints, [(hints[0], "offline and not cached")])

        attempts: List[Tuple[str, str]] = []
        for candidate in self.expand_candidates(hints, expect_page=expect_page):
            try:
                resolved = self._fetch(candidate, expect_page, validate=validate)
            except CandidateRejected as exc:
                attempts.append((candidate, str(exc)))
                logger.debug("Rejected %s: %s", candidate, exc)
                continue
            logger.debug("Resolved %s via %s", hints[0], candidate)
            return resolved
        raise UnresolvableError(hints, attempts)

    def resolve_page(self, hints: Sequence[str], name: str) -> Resolved:
        """Resolve an HTML page, following the content frame of a frameset."""
        key = PageCache.page_key(name)
        resolved = self.resolve(hints, cache_key=key, expect_page=True)
        frame_url = find_content_frame(resolved.text, resolved.location)
        if not frame_url:
            return resolved
        try:
            return self.resolve([frame_url], cache_key=PageCache.page_key(name + "-frame"))
        except UnresolvableError as exc:
            logger.warning("Content frame %s unavailable (%s); using frameset page", frame_url, exc)
            return resolved


def find_content_frame(html: str, base_url: str) -> Optional[str]:
    if "<frameset" not in html.lower():
        return None
    soup = BeautifulSoup(html, "html.parser")
    frames = soup.find_all("frame")
    if not frames:
        return None
    preferred = [f for f in frames if (f.get("name") or "").lower() in ("cont", "main", "contents")]
    if preferred:
        target = preferred[0]
    elif len(frames) > 1:
        target = frames[1]
    else:
        target = frames[0]
    return absolute_url(target.get("src"), base_url)
