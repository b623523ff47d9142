"""Image validation and the per-entry asset pipeline."""

from __future__ import annotations

import hashlib
import logging
import re
import struct
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from filetype import guess

from .models import AssetCandidate, AssetResult, SkippedAsset, StoredAsset
from .resolver import PageCache, Resolved, SourceResolver, UnresolvableError

logger = logging.getLogger("archive_ingest")

ALLOWED_IMAGE_TYPES = {"png", "jpg", "gif", "bmp"}
KIND_DIRECTORIES = {"icon": "icons", "screenshot": "screenshots", "banner": "banners"}
# Start-of-frame markers carry the frame size; C4 (DHT), C8 (JPG) and CC (DAC) do not.
JPEG_SOF_MARKERS = frozenset(
    {0xC0, 0xC1, 0xC2, 0xC3, 0xC5, 0xC6, 0xC7, 0xC9, 0xCA, 0xCB, 0xCD, 0xCE, 0xCF}
)
HTML_SNIFF_PATTERN = re.compile(rb"^\s*(?:<!doctype\s+html|<html|<head|<body|<\?xml)", re.IGNORECASE)


def detect_image_format(data: bytes) -> Optional[str]:
    """Detect image type from magic bytes; returns a lowercase extension."""
    if not data:
        return None
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        ext = kind.extension.lower()
        if ext == "jpeg":
            ext = "jpg"
        return ext if ext in ALLOWED_IMAGE_TYPES else None
    return None


def looks_like_html(data: bytes) -> bool:
    return bool(data) and HTML_SNIFF_PATTERN.match(data[:512]) is not None


def _png_size(data: bytes) -> Optional[Tuple[int, int]]:
    if len(data) < 24 or data[12:16] != b"IHDR":
        return None
    return struct.unpack(">II", data[16:24])


def _gif_size(data: bytes) -> Optional[Tuple[int, int]]:
    if len(data) < 10:
        return None
    return struct.unpack("<HH", data[6:10])


def _bmp_size(data: bytes) -> Optional[Tuple[int, int]]:
    if len(data) < 26:
        return None
    (header_size,) = struct.unpack("<I", data[14:18])
    if header_size == 12:
        return struct.unpack("<HH", data[18:22])
    width, height = struct.unpack("<ii", data[18:26])
    return abs(width), abs(height)


def _jpeg_size(data: bytes) -> Optional[Tuple[int, int]]:
    offset = 2
    while offset + 4 <= len(data):
        if data[offset] != 0xFF:
            offset += 1
            continue
        marker = data[offset + 1]
        if marker == 0xFF:
            offset += 1
            continue
        if marker in (0xD8, 0x01) or 0xD0 <= marker <= 0xD7:
            offset += 2
            continue
        if marker in (0xD9, 0xDA):
            return None
        (length,) = struct.unpack(">H", data[offset + 2:offset + 4])
        if marker in JPEG_SOF_MARKERS:
            if offset + 9 > len(data):
                return None
            height, width = struct.unpack(">HH", data[offset + 5:offset + 9])
            return width, height
        offset += 2 + length
    return None


DIMENSION_READERS = {"png": _png_size, "jpg": _jpeg_size, "gif": _gif_size, "bmp": _bmp_size}


def image_dimensions(data: bytes, image_format: Optional[str] = None) -> Optional[Tuple[int, int]]:
    """Read pixel dimensions straight from the format header.

    Returns ``None`` for unknown formats, truncated headers and zero sizes.
    """
    image_format = image_format or detect_image_format(data)
    reader = DIMENSION_READERS.get(image_format or "")
    if reader is None:
        return None
    size = reader(data)
    if not size or size[0] <= 0 or size[1] <= 0:
        return None
    return int(size[0]), int(size[1])


def reject_non_image(resolved: Resolved) -> Optional[str]:
    if detect_image_format(resolved.content):
        return None
    if looks_like_html(resolved.content):
        return "HTML page instead of image"
    return "not an image"


def asset_filename(entry_id: str, position: int, extension: str) -> str:
    """``05.png`` for the first image of an entry, ``05-02.png`` for the second."""
    if position <= 1:
        return f"{entry_id}.{extension}"
    return f"{entry_id}-{position:02d}.{extension}"


def entry_file_pattern(entry_id: str) -> "re.Pattern[str]":
    return re.compile(r"^" + re.escape(entry_id) + r"(?:-\d+)?\.[A-Za-z0-9]+$")


class AssetPipeline:
    """Fetch, validate, filter and persist the images of one source."""

    def __init__(self, resolver: SourceResolver, output_root: Path):
        self.resolver = resolver
        self.source_id = resolver.source.id
        self.profile = resolver.source.profile
        self.output_root = Path(output_root)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def directory(self, kind: str) -> Path:
        return self.output_root / KIND_DIRECTORIES[kind] / self.source_id

    def public_path(self, kind: str, filename: str) -> str:
        return f"/{KIND_DIRECTORIES[kind]}/{self.source_id}/{filename}"

    def _lock_for(self, kind: str, entry_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(f"{kind}:{entry_id}", threading.Lock())

    def fetch_candidate(self, url: str) -> AssetCandidate:
        """Resolve one URL into a validated image; raises ``UnresolvableError``."""
        resolved = self.resolver.resolve(
            [url],
            cache_key=PageCache.asset_key(url),
            expect_page=False,
            validate=reject_non_image,
        )
        data = resolved.content
        extension = detect_image_format(data) or "bin"
        size = image_dimensions(data, extension)
        return AssetCandidate(
            source_url=url,
            content=data,
            extension=extension,
            digest=hashlib.md5(data).hexdigest(),
            width=size[0] if size else None,
            height=size[1] if size else None,
        )

    def _gather(self, urls: Iterable[str], result: AssetResult) -> List[AssetCandidate]:
        candidates: List[AssetCandidate] = []
        for url in dict.fromkeys(url for url in urls if url):
            try:
                candidates.append(self.fetch_candidate(url))
            except UnresolvableError as exc:
                reason = exc.attempts[-1][1] if exc.attempts else str(exc)
                logger.warning("Failed to fetch image %s: %s", url, reason)
                result.failures.append(f"{url}: {reason}")
        return candidates

    def select_screenshots(
        self, candidates: List[AssetCandidate], result: AssetResult
    ) -> List[AssetCandidate]:
        """Apply the small, duplicate, quality and count filters in order."""
        limit = self.profile.small_image_limit
        accepted: List[AssetCandidate] = []
        digests = set()
        for candidate in candidates:
            if (
                candidate.width is not None
                and candidate.height is not None
                and candidate.width < limit
                and candidate.height < limit
            ):
                result.skipped.append(SkippedAsset(candidate.source_url, "small"))
                continue
            if candidate.digest in digests:
                result.skipped.append(SkippedAsset(candidate.source_url, "duplicate"))
                continue
            digests.add(candidate.digest)
            accepted.append(candidate)

        min_width, min_height = self.profile.high_quality
        if any(candidate.at_least(min_width, min_height) for candidate in accepted):
            superseded = [c for c in accepted if not c.at_least(min_width, min_height)]
            for candidate in superseded:
                result.skipped.append(SkippedAsset(candidate.source_url, "lower-quality"))
            accepted = [c for c in accepted if c.at_least(min_width, min_height)]

        cap = max(1, self.profile.max_screenshots)
        for candidate in accepted[cap:]:
            result.skipped.append(SkippedAsset(candidate.source_url, "limit"))
        return accepted[:cap]

    def purge(self, kind: str, entry_id: str) -> List[Path]:
        """Delete every stored file of an entry, exactly ``{id}.ext`` or ``{id}-NN.ext``."""
        directory = self.directory(kind)
        if not directory.is_dir():
            return []
        pattern = entry_file_pattern(entry_id)
        removed = []
        for path in sorted(directory.iterdir()):
            if path.is_file() and pattern.match(path.name):
                path.unlink()
                removed.append(path)
        if removed:
            logger.debug("Purged %d stale %s file(s) for %s", len(removed), kind, entry_id)
        return removed

    def _write(
        self, kind: str, entry_id: str, selected: List[AssetCandidate], result: AssetResult
    ) -> None:
        directory = self.directory(kind)
        with self._lock_for(kind, entry_id):
            self.purge(kind, entry_id)
            directory.mkdir(parents=True, exist_ok=True)
            for position, candidate in enumerate(selected, start=1):
                filename = asset_filename(entry_id, position, candidate.extension)
                destination = directory / filename
                try:
                    destination.write_bytes(candidate.content)
                except OSError as exc:
                    logger.warning("Failed to write image %s: %s", destination, exc)
                    result.failures.append(f"{candidate.source_url}: {exc}")
                    continue
                result.stored.append(
                    StoredAsset(kind, self.public_path(kind, filename), candidate.source_url)
                )

    def materialize(self, entry_id: str, urls: Iterable[str], kind: str) -> AssetResult:
        """Persist the assets of one slot (``icon``, ``screenshot`` or ``banner``)."""
        if kind not in KIND_DIRECTORIES:
            raise ValueError(f"Unknown asset kind {kind!r}")
        result = AssetResult()
        if kind == "screenshot":
            selected = self.select_screenshots(self._gather(urls, result), result)
        else:
            selected = []
            for url in dict.fromkeys(url for url in urls if url):
                found = self._gather([url], result)
                if found:
                    selected = found
                    break
        if selected:
            self._write(kind, entry_id, selected, result)
        return result
