"""Data models used throughout the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional


@dataclass
class IndexStub:
    """Raw row extracted from a source's listing page."""

    number: str
    title: str
    author: Optional[str] = None
    category: Optional[str] = None
    engine: Optional[str] = None
    streaming: Optional[str] = None
    detail_url: Optional[str] = None
    forum_url: Optional[str] = None
    download_url: Optional[str] = None
    download_label: Optional[str] = None
    icon_url: Optional[str] = None


@dataclass
class DetailFields:
    """Supplementary data scraped from an entry's own page."""

    author: Optional[str] = None
    category: Optional[str] = None
    engine: Optional[str] = None
    streaming: Optional[str] = None
    author_comment: Optional[str] = None
    host_comment: Optional[str] = None
    forum_url: Optional[str] = None
    download_url: Optional[str] = None
    download_label: Optional[str] = None
    screenshots: List[str] = field(default_factory=list)


@dataclass
class AssetCandidate:
    """Fetched binary that passed format detection."""

    source_url: str
    content: bytes
    extension: str
    digest: str
    width: Optional[int] = None
    height: Optional[int] = None

    def at_least(self, width: int, height: int) -> bool:
        if self.width is None or self.height is None:
            return False
        return self.width >= width and self.height >= height


@dataclass
class StoredAsset:
    """Asset written to disk and referenced by a record."""

    kind: str
    path: str
    source_url: str


@dataclass
class SkippedAsset:
    source: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"source": self.source, "reason": self.reason}


@dataclass
class AssetResult:
    """Outcome of materializing one asset slot for an entry."""

    stored: List[StoredAsset] = field(default_factory=list)
    skipped: List[SkippedAsset] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [asset.path for asset in self.stored]

    @property
    def first_path(self) -> Optional[str]:
        return self.stored[0].path if self.stored else None


@dataclass
class DownloadLink:
    url: str
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        payload = {"url": self.url}
        if self.label:
            payload["label"] = self.label
        return payload


# Python attribute -> catalog JSON key. Order is the serialized key order.
RECORD_KEYS = (
    ("id", "id"),
    ("source_id", "festivalId"),
    ("no", "no"),
    ("title", "title"),
    ("author", "author"),
    ("category", "category"),
    ("engine", "engine"),
    ("streaming", "streaming"),
    ("streaming_policy", "streamingPolicy"),
    ("forum", "forum"),
    ("download", "download"),
    ("author_comment", "authorComment"),
    ("host_comment", "hostComment"),
    ("icon", "icon"),
    ("screenshots", "ss"),
)
ALWAYS_PRESENT = {"id", "source_id", "title", "author"}


@dataclass
class WorkRecord:
    """Normalized catalog entry for one work of one source."""

    id: str
    source_id: str
    title: str
    author: str = ""
    no: Optional[str] = None
    category: Optional[str] = None
    engine: Optional[str] = None
    streaming: Optional[str] = None
    streaming_policy: Optional[str] = None
    forum: Optional[str] = None
    download: Optional[DownloadLink] = None
    author_comment: Optional[str] = None
    host_comment: Optional[str] = None
    icon: Optional[str] = None
    screenshots: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for attr, key in RECORD_KEYS:
            value = getattr(self, attr)
            if attr in ALWAYS_PRESENT:
                payload[key] = value or ""
                continue
            if is_empty(value):
                continue
            payload[key] = value.to_dict() if isinstance(value, DownloadLink) else value
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "WorkRecord":
        values: Dict[str, Any] = {}
        for attr, key in RECORD_KEYS:
            if key not in payload:
                continue
            values[attr] = payload[key]
        download = values.get("download")
        if isinstance(download, dict) and download.get("url"):
            values["download"] = DownloadLink(download["url"], download.get("label"))
        elif isinstance(download, str) and download:
            values["download"] = DownloadLink(download)
        else:
            values.pop("download", None)
        values["screenshots"] = list(values.get("screenshots") or [])
        values.setdefault("title", "")
        values.setdefault("author", "")
        values.setdefault("source_id", "")
        return cls(**values)

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]


def is_empty(value: Any) -> bool:
    """Treat None, blank strings and empty collections as "no data"."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False
