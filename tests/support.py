"""Fake HTTP plumbing and tiny image builders shared by the tests."""

from __future__ import annotations

import struct
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import requests

from archive_ingest.config import IngestConfig


class FakeResponse:
    def __init__(
        self,
        content: Union[bytes, str] = b"",
        status_code: int = 200,
        headers: Optional[Dict[str, str]] = None,
        url: Optional[str] = None,
    ) -> None:
        self.content = content.encode("utf-8") if isinstance(content, str) else content
        self.status_code = status_code
        self.headers = headers or {}
        self.url = url


Route = Union[FakeResponse, Exception, List[Union[FakeResponse, Exception]]]


class FakeSession:
    """Serves canned responses per URL; unknown URLs answer 404."""

    def __init__(self, routes: Optional[Dict[str, Route]] = None) -> None:
        self.routes: Dict[str, Route] = dict(routes or {})
        self.calls: List[Tuple[str, Optional[dict]]] = []

    def get(self, url: str, params: Optional[dict] = None, timeout: Optional[float] = None):
        self.calls.append((url, params))
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(b"", status_code=404, url=url)
        if isinstance(route, list):
            item = route.pop(0) if len(route) > 1 else route[0]
        else:
            item = route
        if isinstance(item, Exception):
            raise item
        if item.url is None:
            return FakeResponse(item.content, item.status_code, item.headers, url)
        return item

    def urls(self) -> List[str]:
        return [url for url, _ in self.calls]


def connection_error() -> requests.ConnectionError:
    return requests.ConnectionError("connection reset")


def make_config(root: Path, **overrides) -> IngestConfig:
    values = dict(
        output_root=root / "public",
        data_root=root / "data",
        cache_root=root / "catch",
        workers=2,
        backoff_seconds=0.0,
        discover_snapshots=False,
    )
    values.update(overrides)
    return IngestConfig(**values)


def png_bytes(width: int, height: int, salt: bytes = b"") -> bytes:
    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    text = b"Comment\x00" + salt
    return (
        b"\x89PNG\r\n\x1a\n"
        + struct.pack(">I", len(header)) + b"IHDR" + header + b"\x00\x00\x00\x00"
        + struct.pack(">I", len(text)) + b"tEXt" + text + b"\x00\x00\x00\x00"
        + struct.pack(">I", 0) + b"IEND" + b"\xaeB`\x82"
    )


def jpeg_bytes(width: int, height: int, salt: bytes = b"", with_tables: bool = True) -> bytes:
    app0 = b"JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00"
    parts = [b"\xff\xd8", b"\xff\xe0" + struct.pack(">H", len(app0) + 2) + app0]
    if salt:
        parts.append(b"\xff\xfe" + struct.pack(">H", len(salt) + 2) + salt)
    if with_tables:
        # A Huffman table segment uses a C-range marker that carries no frame size.
        table = b"\x00" + b"\x01" * 16 + b"\x00"
        parts.append(b"\xff\xc4" + struct.pack(">H", len(table) + 2) + table)
    frame = b"\x08" + struct.pack(">HH", height, width) + b"\x03" + b"\x01\x22\x00\x02\x11\x01\x03\x11\x01"
    parts.append(b"\xff\xc0" + struct.pack(">H", len(frame) + 2) + frame)
    parts.append(b"\xff\xda\x00\x08\x01\x01\x00\x00\x3f\x00\x00\xff\xd9")
    return b"".join(parts)


def gif_bytes(width: int, height: int, salt: bytes = b"") -> bytes:
    return b"GIF89a" + struct.pack("<HH", width, height) + b"\x00\x00\x00" + salt + b";"


def bmp_bytes(width: int, height: int, salt: bytes = b"") -> bytes:
    dib = struct.pack("<IiiHHIIiiII", 40, width, height, 1, 24, 0, 0, 2835, 2835, 0, 0)
    body = dib + salt
    return b"BM" + struct.pack("<IHHI", 14 + len(body), 0, 0, 54) + body
