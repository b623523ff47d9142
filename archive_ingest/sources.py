"""Source definitions and the declarative parsing profiles that drive them."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple


class SourceConfigError(ValueError):
    """Raised for malformed source definitions or unknown source ids."""


STRUCTURED_FIELDS = frozenset(
    {"title", "author", "category", "engine", "streaming", "forum", "download"}
)

DEFAULT_COLUMNS: Mapping[str, int] = {
    "no": 0,
    "icon": 1,
    "work": 2,
    "type": 3,
    "download": 4,
    "streaming": 5,
    "forum": 6,
}

DEFAULT_HEADER_LABELS: Mapping[str, Tuple[str, ...]] = {
    "no": ("No", "No.", "番号", "#"),
    "icon": ("アイコン", "Icon"),
    "work": ("作品名", "タイトル", "作品", "作品名/作者"),
    "type": ("ジャンル", "ジャンル/ツール", "種別"),
    "download": ("DL", "ダウンロード", "Download"),
    "streaming": ("配信", "動画配信", "実況", "配信/投稿"),
    "forum": ("感想", "掲示板", "感想スレ", "スレ"),
}

DEFAULT_INDEX_LABELS: Mapping[str, Tuple[str, ...]] = {
    "author": ("作者", "制作者", "製作者"),
    "category": ("ジャンル",),
    "engine": ("ツール", "使用ツール", "使用エンジン", "エンジン"),
    "streaming": ("動画配信", "配信"),
}


@dataclass(frozen=True)
class LabelSet:
    """Synonyms used to anchor label-based extraction on detail pages."""

    author: Tuple[str, ...] = ("作者名", "作者", "制作者")
    author_comment: Tuple[str, ...] = ("作者コメント", "作者のコメント", "作者より", "ｺﾒﾝﾄ", "コメント")
    host_comment: Tuple[str, ...] = ("管理人コメント", "主催コメント", "管理人より")
    streaming: Tuple[str, ...] = ("動画配信", "配信/投稿", "配信")
    category: Tuple[str, ...] = ("ジャンル",)
    engine: Tuple[str, ...] = ("使用ツール", "ツール", "使用エンジン")

    def comment_labels(self) -> Tuple[str, ...]:
        return self.author_comment + self.host_comment


@dataclass(frozen=True)
class ParsingProfile:
    """Per-era structural conventions of a source's listing and detail pages."""

    layout: str = "columns"
    row_selector: str = "tr"
    number_in_header: bool = False
    columns: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_COLUMNS))
    header_labels: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_HEADER_LABELS)
    )
    separator: str = "br"
    field_selectors: Mapping[str, str] = field(default_factory=dict)
    index_labels: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_INDEX_LABELS)
    )
    detail_labels: LabelSet = field(default_factory=LabelSet)
    content_selector: Optional[str] = None
    banner_selector: Optional[str] = None
    pad_number: int = 0
    max_screenshots: int = 6
    small_image_limit: int = 100
    high_quality: Tuple[int, int] = (400, 300)
    detail_precedence: FrozenSet[str] = frozenset()
    closed_markers: Tuple[str, ...] = ()
    entry_link_pattern: Optional[str] = None

    def __post_init__(self) -> None:
        if self.layout not in ("columns", "labels"):
            raise SourceConfigError(f"Unknown layout {self.layout!r}")
        if self.separator not in ("br", "span"):
            raise SourceConfigError(f"Unknown separator {self.separator!r}")
        unknown = set(self.detail_precedence) - STRUCTURED_FIELDS
        if unknown:
            raise SourceConfigError(
                f"detail_precedence may only name structured fields, got {sorted(unknown)}"
            )
        if self.entry_link_pattern is not None:
            try:
                groups = re.compile(self.entry_link_pattern).groups
            except re.error as exc:
                raise SourceConfigError(f"Invalid entry_link_pattern: {exc}") from exc
            if groups < 1:
                raise SourceConfigError("entry_link_pattern must capture the entry number")


@dataclass(frozen=True)
class Source:
    """One historical event archive and where to find it."""

    id: str
    label: str
    base_urls: Tuple[str, ...]
    listing_paths: Tuple[str, ...] = ("index.html",)
    profile: ParsingProfile = field(default_factory=ParsingProfile)
    timestamps: Tuple[str, ...] = ()
    proxies: Tuple[str, ...] = ()

    def listing_urls(self) -> List[str]:
        urls: List[str] = []
        for base in self.base_urls:
            prefix = base if base.endswith("/") else base + "/"
            for listing in self.listing_paths:
                url = listing if "://" in listing else prefix + listing.lstrip("/")
                if url not in urls:
                    urls.append(url)
        return urls


BUILTIN_SOURCES: Tuple[Source, ...] = (
    Source(
        id="2010-kouhaku",
        label="VIPRPG紅白 2010",
        base_urls=("https://vipkohaku20102.web.fc2.com/",),
        listing_paths=("menu_entry.html",),
        profile=ParsingProfile(
            layout="columns",
            columns={"no": 0, "icon": 1, "work": 2, "type": 3, "download": 4},
            content_selector='table[bgcolor="#000000"]',
            max_screenshots=4,
        ),
    ),
    Source(
        id="2016-gw",
        label="VIPRPG GW 2016",
        base_urls=("http://vipkohaku.x.fc2.com/2016GW/",),
        listing_paths=("menu_entry.html", "index.html"),
        profile=ParsingProfile(
            layout="columns",
            number_in_header=True,
            separator="span",
            entry_link_pattern=r"entry(\d{1,3})\.html",
        ),
    ),
    Source(
        id="2018-gw",
        label="VIPRPG GW 2018",
        base_urls=("https://vipkohaku.x.fc2.com/2018GW/",),
        listing_paths=("menu_entry.html", "top.html", "index.html"),
        profile=ParsingProfile(
            layout="columns",
            banner_selector="img[src*='banner']",
            max_screenshots=6,
        ),
    ),
    Source(
        id="2019-kouhaku",
        label="VIPRPG紅白 2019",
        base_urls=("https://kohakuviprpg2019.x.2nt.com/",),
        listing_paths=("list/",),
        profile=ParsingProfile(
            layout="labels",
            row_selector="div.tyuuou2, div.tyuuou3",
            field_selectors={
                "no": "div.number",
                "title": "div.name b a",
                "author": "div.author p",
                "category": "div.genre",
                "engine": "div.tkool",
                "icon": "div.icon img",
                "links": "div.downlord a",
            },
            content_selector="div.ran, body",
            banner_selector="img[src*='topbanar']",
            detail_precedence=frozenset({"streaming"}),
        ),
    ),
    Source(
        id="2023-winter",
        label="VIPRPG冬 2023",
        base_urls=("https://viprpg2023winter.x.2nt.com/",),
        listing_paths=("index.html",),
        profile=ParsingProfile(layout="columns", max_screenshots=12),
        proxies=("https://r.jina.ai/",),
    ),
)


def builtin_sources() -> Dict[str, Source]:
    return {source.id: source for source in BUILTIN_SOURCES}


def _as_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


def _profile_from_dict(payload: Mapping[str, Any]) -> ParsingProfile:
    known = {f.name for f in fields(ParsingProfile)}
    unknown = set(payload) - known
    if unknown:
        raise SourceConfigError(f"Unknown profile keys: {sorted(unknown)}")
    values: Dict[str, Any] = dict(payload)
    if "detail_labels" in values:
        values["detail_labels"] = LabelSet(
            **{key: _as_tuple(val) for key, val in values["detail_labels"].items()}
        )
    for key in ("header_labels", "index_labels"):
        if key in values:
            values[key] = {name: _as_tuple(val) for name, val in values[key].items()}
    if "high_quality" in values:
        width, height = values["high_quality"]
        values["high_quality"] = (int(width), int(height))
    if "detail_precedence" in values:
        values["detail_precedence"] = frozenset(values["detail_precedence"])
    if "closed_markers" in values:
        values["closed_markers"] = _as_tuple(values["closed_markers"])
    return ParsingProfile(**values)


def source_from_dict(payload: Mapping[str, Any]) -> Source:
    try:
        source_id = str(payload["id"])
        base_urls = _as_tuple(payload["base_urls"])
    except KeyError as exc:
        raise SourceConfigError(f"Source definition is missing {exc.args[0]!r}") from exc
    if not base_urls:
        raise SourceConfigError(f"Source {source_id} defines no base_urls")
    return Source(
        id=source_id,
        label=str(payload.get("label") or source_id),
        base_urls=base_urls,
        listing_paths=_as_tuple(payload.get("listing_paths")) or ("index.html",),
        profile=_profile_from_dict(payload.get("profile") or {}),
        timestamps=_as_tuple(payload.get("timestamps")),
        proxies=_as_tuple(payload.get("proxies")),
    )


def load_sources(path: Path) -> Dict[str, Source]:
    """Load source definitions from a JSON array using the dataclass field names."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SourceConfigError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, list):
        raise SourceConfigError(f"{path} must contain a JSON array of sources")
    return {source.id: source for source in (source_from_dict(item) for item in raw)}


def select_sources(
    source_ids: Iterable[str],
    registry: Optional[Mapping[str, Source]] = None,
) -> List[Source]:
    registry = registry if registry is not None else builtin_sources()
    selected: List[Source] = []
    for source_id in source_ids:
        if source_id not in registry:
            raise SourceConfigError(
                f"Unknown source {source_id!r}; known: {', '.join(sorted(registry))}"
            )
        selected.append(registry[source_id])
    return selected
