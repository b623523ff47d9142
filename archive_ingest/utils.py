"""Utility helpers for text normalization, entry numbers and URL handling."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional, Tuple
from urllib.parse import urljoin

WHITESPACE_PATTERN = re.compile(r"[\s　]+")
ENTRY_NUMBER_PATTERN = re.compile(r"^(?:No\.?\s*|#)?(\d{1,3})[.:：]?$", re.IGNORECASE)
EMBEDDED_NUMBER_PATTERN = re.compile(r"(?<!\d)(\d{1,3})(?!\d)")
LEADING_BRACKETS_PATTERN = re.compile(r"^[\s﻿]*[】\]]+\s*")
TITLE_GLYPHS_PATTERN = re.compile(r"[★☆●◎◇◆○■□△▽※♪♭♫]+")
TITLE_KEY_PATTERN = re.compile(r"[\s　“”\"'、，,。．.\-—_()（）\[\]【】「」『』!！?？・:：]+")


def collapse_whitespace(value: Optional[str]) -> Optional[str]:
    """Trim and collapse internal whitespace; blank input becomes None."""
    if not value:
        return None
    result = WHITESPACE_PATTERN.sub(" ", value).strip()
    return result or None


def sanitize_multiline(value: Optional[str]) -> Optional[str]:
    """Collapse whitespace per line, keeping single blank lines between paragraphs."""
    if not value:
        return None
    lines = []
    for raw in value.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = WHITESPACE_PATTERN.sub(" ", raw).strip()
        if not line and (not lines or not lines[-1]):
            continue
        lines.append(line)
    while lines and not lines[-1]:
        lines.pop()
    result = "\n".join(lines)
    return result or None


def strip_leading_brackets(value: Optional[str]) -> Optional[str]:
    """Drop closing brackets left behind after a ``【label】`` prefix was removed."""
    if not value:
        return None
    return LEADING_BRACKETS_PATTERN.sub("", value) or None


def clean_title(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return collapse_whitespace(TITLE_GLYPHS_PATTERN.sub(" ", value))


def normalize_title(value: Optional[str]) -> str:
    """Key used to match the same work across differently numbered records."""
    return TITLE_KEY_PATTERN.sub("", (value or "").lower())


def parse_entry_number(text: Optional[str]) -> Optional[str]:
    """Return the digits of an entry-number token, preserving leading zeros."""
    normalized = collapse_whitespace(text)
    if not normalized:
        return None
    match = ENTRY_NUMBER_PATTERN.match(normalized)
    if not match:
        return None
    return match.group(1)


def find_entry_number(text: Optional[str]) -> Optional[str]:
    """Locate the first 1-3 digit token inside free text such as ``エントリーNo.05``."""
    match = EMBEDDED_NUMBER_PATTERN.search(text or "")
    return match.group(1) if match else None


def pad_number(number: str, width: int) -> str:
    if width <= 0 or not number.isdigit():
        return number
    return number.zfill(width)


def number_sort_key(number: Optional[str]) -> Tuple[int, int, str]:
    """Sort numerically while keeping "00" and "0" distinct and stable."""
    raw = number or ""
    if raw.isdigit():
        return (0, int(raw), raw)
    return (1, 0, raw)


def absolute_url(reference: Optional[str], base: Optional[str]) -> Optional[str]:
    """Resolve a page reference against the page's resolved location."""
    if not reference:
        return None
    reference = reference.strip()
    if not reference or reference.startswith(("javascript:", "mailto:", "data:", "#")):
        return None
    try:
        return urljoin(base or "", reference.replace("^", "%5E"))
    except ValueError:
        return None


def swap_protocol(url: str) -> Optional[str]:
    if url.startswith("https://"):
        return "http://" + url[len("https://"):]
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()
