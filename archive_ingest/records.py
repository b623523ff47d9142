"""Record assembly, additive merging and catalog persistence."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .models import DetailFields, DownloadLink, IndexStub, WorkRecord, is_empty
from .resolver import unwrap_wayback
from .sources import Source
from .utils import normalize_title, number_sort_key, pad_number

logger = logging.getLogger("archive_ingest")

# Slots whose files are regenerated (and purged) on every successful run.
ASSET_FIELDS = ("icon", "screenshots")
AUDITED_FIELDS = (
    "title",
    "author",
    "category",
    "engine",
    "streaming",
    "forum",
    "author_comment",
    "host_comment",
)

FORBID_PATTERN = re.compile(
    r"禁止|不可|(?<![A-Za-z])NG(?![A-Za-z])|ダメ|だめ|駄目|ご遠慮|お控え|しないで|×|✕"
)
RESTRICTED_PATTERN = re.compile(
    r"条件|一部|要連絡|連絡|報告|相談|許可制|ネタバレ|クリア後|△", re.IGNORECASE
)
ALLOW_PATTERN = re.compile(
    r"(?<![A-Za-z])OK(?![A-Za-z])|可|いいぜ|いいよ|自由|歓迎|どうぞ|○|〇|◯", re.IGNORECASE
)


def classify_streaming(text: Optional[str]) -> Optional[str]:
    """Map free-form streaming permission text to ``forbid``, ``restricted`` or ``allow``."""
    if is_empty(text):
        return None
    if FORBID_PATTERN.search(text):
        return "forbid"
    if RESTRICTED_PATTERN.search(text):
        return "restricted"
    if ALLOW_PATTERN.search(text):
        return "allow"
    return None


def record_id(source_id: str, number: str) -> str:
    return f"{source_id}-work-{number}"


def entry_key(source: Source, stub: IndexStub) -> str:
    """Identifier used for record ids and asset filenames.

    Padding applies here only; the stub keeps the number as printed.
    """
    if not stub.number:
        return normalize_title(stub.title)
    return pad_number(stub.number, source.profile.pad_number)


def _choose(name: str, index_value, detail_value, precedence) -> Optional[str]:
    first, second = (detail_value, index_value) if name in precedence else (index_value, detail_value)
    return first if not is_empty(first) else (second if not is_empty(second) else None)


def build_record(
    source: Source,
    stub: IndexStub,
    detail: Optional[DetailFields] = None,
    icon: Optional[str] = None,
    screenshots: Sequence[str] = (),
) -> WorkRecord:
    """Assemble one record; index wins for structured fields, detail for comments."""
    detail = detail or DetailFields()
    precedence = source.profile.detail_precedence

    streaming = _choose("streaming", stub.streaming, detail.streaming, precedence)
    forum = _choose("forum", stub.forum_url, detail.forum_url, precedence)
    if forum:
        forum = unwrap_wayback(forum)[0]

    download = None
    if "download" in precedence and detail.download_url:
        download = DownloadLink(detail.download_url, detail.download_label)
    elif stub.download_url:
        download = DownloadLink(stub.download_url, stub.download_label or detail.download_label)
    elif detail.download_url:
        download = DownloadLink(detail.download_url, detail.download_label)

    return WorkRecord(
        id=record_id(source.id, entry_key(source, stub)),
        source_id=source.id,
        no=stub.number or None,
        title=stub.title,
        author=_choose("author", stub.author, detail.author, precedence) or "",
        category=_choose("category", stub.category, detail.category, precedence),
        engine=_choose("engine", stub.engine, detail.engine, precedence),
        streaming=streaming,
        streaming_policy=classify_streaming(streaming),
        forum=forum,
        download=download,
        author_comment=detail.author_comment,
        host_comment=detail.host_comment,
        icon=icon,
        screenshots=list(screenshots),
    )


def _fill(base: WorkRecord, extra: WorkRecord) -> Dict[str, object]:
    values = {}
    for name in WorkRecord.field_names():
        kept = getattr(base, name)
        values[name] = kept if not is_empty(kept) else getattr(extra, name)
    return values


def merge_records(previous: WorkRecord, current: WorkRecord) -> WorkRecord:
    """Combine two versions of a record without losing any recorded value.

    ``current`` only fills fields that ``previous`` left empty. Asset slots are
    the exception: freshly written icon and screenshot paths replace the old
    ones because the old files were purged when the new ones were stored.
    """
    values = _fill(previous, current)
    for name in ASSET_FIELDS:
        fresh = getattr(current, name)
        if not is_empty(fresh):
            values[name] = fresh
    numbered = previous if not is_empty(previous.no) else current
    values["id"] = numbered.id
    values["no"] = numbered.no
    values["screenshots"] = list(values["screenshots"] or [])
    return WorkRecord(**values)


def catalog_sort_key(record: WorkRecord):
    return (number_sort_key(record.no), record.id)


def _consolidate(records: List[WorkRecord]) -> List[WorkRecord]:
    numbered: Dict[str, WorkRecord] = {}
    for record in records:
        key = normalize_title(record.title)
        if key and not is_empty(record.no):
            numbered.setdefault(key, record)

    folded: Dict[str, WorkRecord] = {}
    kept: List[WorkRecord] = []
    for record in records:
        key = normalize_title(record.title)
        target = numbered.get(key) if is_empty(record.no) and key else None
        if target is None:
            kept.append(record)
            continue
        base = folded.get(target.id, target)
        folded[target.id] = WorkRecord(**_fill(base, record))
        logger.debug("Folded unnumbered %s into %s", record.id, target.id)
    return [folded.get(record.id, record) for record in kept]


def merge_catalogs(previous: Sequence[WorkRecord], current: Sequence[WorkRecord]) -> List[WorkRecord]:
    """Merge this run's records into the persisted catalog, keeping unseen records."""
    by_id = {record.id: record for record in previous}
    by_title: Dict[str, WorkRecord] = {}
    for record in previous:
        key = normalize_title(record.title)
        if key:
            by_title.setdefault(key, record)

    merged: Dict[str, WorkRecord] = {}
    matched = set()
    for record in current:
        match = by_id.get(record.id)
        if match is None:
            candidate = by_title.get(normalize_title(record.title))
            if candidate is not None and candidate.id not in matched and (
                is_empty(candidate.no) or is_empty(record.no)
            ):
                match = candidate
        if match is not None:
            matched.add(match.id)
            record = merge_records(match, record)
        merged[record.id] = merge_records(merged[record.id], record) if record.id in merged else record

    for record in previous:
        if record.id not in matched and record.id not in merged:
            merged[record.id] = record

    return sorted(_consolidate(list(merged.values())), key=catalog_sort_key)


def load_catalog(path: Path) -> List[WorkRecord]:
    path = Path(path)
    if not path.exists():
        return []
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"{path} does not contain a JSON array")
    return [WorkRecord.from_dict(item) for item in payload if isinstance(item, dict)]


def write_json(path: Path, payload) -> None:
    """Write pretty-printed UTF-8 JSON with a trailing newline, replacing atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    os.replace(tmp_path, path)


def write_catalog(path: Path, records: Sequence[WorkRecord]) -> None:
    ordered = sorted(records, key=catalog_sort_key)
    write_json(path, [record.to_dict() for record in ordered])
    logger.info("Wrote %d records to %s", len(ordered), path)


def _asset_exists(output_root: Path, public_path: str) -> bool:
    return (Path(output_root) / public_path.lstrip("/")).is_file()


def find_missing_fields(records: Sequence[WorkRecord], output_root: Path) -> Dict[str, List[str]]:
    """Per record id, the empty fields and asset slots whose files are gone."""
    report: Dict[str, List[str]] = {}
    for record in records:
        missing = [name for name in AUDITED_FIELDS if is_empty(getattr(record, name))]
        if not record.icon or not _asset_exists(output_root, record.icon):
            missing.append("icon")
        if not any(_asset_exists(output_root, path) for path in record.screenshots):
            missing.append("screenshots")
        if missing:
            report[record.id] = missing
    return report
