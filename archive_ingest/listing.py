"""Listing-page parsing into entry stubs."""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Mapping, Optional, Tuple

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from .content import (
    BRACKETS_PATTERN,
    classify_link,
    download_label,
    find_links,
    node_text,
    split_lines,
)
from .models import IndexStub
from .sources import ParsingProfile
from .utils import (
    absolute_url,
    clean_title,
    collapse_whitespace,
    find_entry_number,
    number_sort_key,
    parse_entry_number,
)

logger = logging.getLogger("archive_ingest")

NESTED_LABEL_TAGS = ["span", "small", "font", "em"]
MAX_COLSPAN = 20


def expand_cells(row: Tag) -> List[Tag]:
    """Row cells with each merged cell repeated once per spanned column."""
    cells: List[Tag] = []
    for cell in row.find_all(["td", "th"], recursive=False):
        try:
            span = int(str(cell.get("colspan") or "1").strip())
        except ValueError:
            span = 1
        cells.extend([cell] * max(1, min(span, MAX_COLSPAN)))
    return cells


def split_cell(cell: Optional[Tag], separator: str) -> Tuple[Optional[str], Optional[str]]:
    """Split a cell into its primary and secondary values (title/author, genre/tool)."""
    if cell is None:
        return None, None
    if separator == "span":
        return _split_nested(cell)
    lines = split_lines(cell)
    if not lines:
        return None, None
    primary = collapse_whitespace(lines[0])
    secondary = collapse_whitespace(" ".join(lines[1:])) if len(lines) > 1 else None
    return primary, secondary


def _split_nested(cell: Tag) -> Tuple[Optional[str], Optional[str]]:
    candidates = cell.find_all(NESTED_LABEL_TAGS)
    nested = None
    for candidate in candidates:
        inside_anchor = candidate.find_parent("a") is not None
        if not inside_anchor and candidate.find("a") is None:
            nested = candidate
            break
    if nested is None:
        return node_text(cell), None
    primary_parts = [
        str(text)
        for text in cell.find_all(string=True)
        if isinstance(text, NavigableString) and not isinstance(text, Comment)
        and all(parent is not nested for parent in text.parents)
    ]
    return collapse_whitespace("".join(primary_parts)), node_text(nested)


def _header_text(cell: Tag) -> str:
    return BRACKETS_PATTERN.sub("", node_text(cell) or "").lower()


def header_positions(
    rows: List[Tag], header_labels: Mapping[str, Tuple[str, ...]]
) -> Optional[Dict[str, int]]:
    """Map fields to column positions from the first row that reads like a header."""
    for row in rows:
        cells = expand_cells(row)
        if not cells:
            continue
        if parse_entry_number(node_text(cells[0])):
            return None
        positions: Dict[str, int] = {}
        seen = set()
        for index, cell in enumerate(cells):
            if id(cell) in seen:
                continue
            seen.add(id(cell))
            text = _header_text(cell)
            if not text:
                continue
            for field_name, labels in header_labels.items():
                if field_name in positions:
                    continue
                if any(text.startswith(label.lower()) for label in labels):
                    positions[field_name] = index
                    break
        if len(positions) >= 2:
            if "no" not in positions and 0 not in positions.values():
                positions["no"] = 0
            return positions
    return None


def _cell(cells: List[Tag], columns: Mapping[str, int], name: str) -> Optional[Tag]:
    index = columns.get(name)
    if index is None or index >= len(cells):
        return None
    return cells[index]


def _first_href(cell: Optional[Tag]) -> Optional[str]:
    if cell is None:
        return None
    anchor = cell.find("a", href=True)
    return anchor.get("href") if anchor else None


def _img_src(node: Optional[Tag]) -> Optional[str]:
    if node is None:
        return None
    img = node if node.name == "img" else node.find("img")
    return img.get("src") if img is not None else None


def _row_number(row: Tag, cells: List[Tag], columns: Mapping[str, int], profile: ParsingProfile) -> Optional[str]:
    if profile.number_in_header:
        header = row.find("th")
        return parse_entry_number(node_text(header)) if header is not None else None
    return parse_entry_number(node_text(_cell(cells, columns, "no")))


def _parse_columns(soup: BeautifulSoup, profile: ParsingProfile, base_url: str) -> List[IndexStub]:
    rows = soup.select(profile.row_selector)
    columns = header_positions(rows, profile.header_labels) or profile.columns
    stubs: List[IndexStub] = []
    for row in rows:
        cells = expand_cells(row)
        if not cells:
            continue
        number = _row_number(row, cells, columns, profile)
        if number is None:
            continue
        work_cell = _cell(cells, columns, "work")
        title, author = split_cell(work_cell, profile.separator)
        category, engine = split_cell(_cell(cells, columns, "type"), profile.separator)
        download_cell = _cell(cells, columns, "download")
        forum_cell = _cell(cells, columns, "forum")
        streaming_cell = _cell(cells, columns, "streaming")

        stub = IndexStub(
            number=number,
            title=clean_title(title) or f"Work {number}",
            author=author,
            category=category,
            engine=engine,
            streaming=node_text(streaming_cell),
            detail_url=absolute_url(_first_href(work_cell), base_url),
            forum_url=absolute_url(_first_href(forum_cell), base_url),
            download_url=absolute_url(_first_href(download_cell), base_url),
            download_label=download_label(node_text(download_cell)),
            icon_url=absolute_url(_img_src(_cell(cells, columns, "icon")), base_url),
        )
        _fill_links(stub, row.find_all("a"), base_url)
        stubs.append(stub)
    return stubs


def _parse_entry_links(soup: BeautifulSoup, profile: ParsingProfile, base_url: str) -> List[IndexStub]:
    """Stubs from anchors whose href carries the entry number (``entry05.html``)."""
    pattern = re.compile(profile.entry_link_pattern or "", re.IGNORECASE)
    stubs: List[IndexStub] = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        match = pattern.search(anchor.get("href"))
        if not match or match.group(1) in seen:
            continue
        title, author = split_cell(anchor, "br")
        if not title:
            continue
        number = match.group(1)
        seen.add(number)
        cell = anchor.find_parent("td")
        stub = IndexStub(
            number=number,
            title=clean_title(title) or f"Work {number}",
            author=author,
            detail_url=absolute_url(anchor.get("href"), base_url),
        )
        if cell is not None:
            stub.icon_url = absolute_url(_img_src(cell.find_previous_sibling("td")), base_url)
            following = [a for td in cell.find_next_siblings("td") for a in td.find_all("a")]
            _fill_links(stub, following, base_url)
        stubs.append(stub)
    return stubs


def _label_value(lines: List[str], labels: Tuple[str, ...]) -> Optional[str]:
    for label in labels:
        pattern = re.compile(
            r"^[【\[(（]?" + re.escape(label) + r"[】\])）]?\s*[:：]?\s*(.+)$"
        )
        for line in lines:
            match = pattern.match(line)
            if match:
                return collapse_whitespace(match.group(1))
    return None


def _leading_number(lines: List[str]) -> Optional[str]:
    for line in lines:
        number = parse_entry_number(line.split()[0])
        if number:
            return number
    return None


def _parse_label_blocks(soup: BeautifulSoup, profile: ParsingProfile, base_url: str) -> List[IndexStub]:
    selectors = profile.field_selectors
    stubs: List[IndexStub] = []
    for block in soup.select(profile.row_selector):
        lines = split_lines(block)

        def pick(name: str) -> Optional[Tag]:
            selector = selectors.get(name)
            return block.select_one(selector) if selector else None

        number_node = pick("no")
        if number_node is not None:
            number = find_entry_number(node_text(number_node))
        else:
            number = _leading_number(lines)
        if number is None:
            continue

        title_node = pick("title")
        if title_node is None:
            title_node = next(
                (a for a in block.find_all("a", href=True)
                 if classify_link(a.get("href"), node_text(a)) is None),
                None,
            )
        title = node_text(title_node)
        if not title:
            title = next((line for line in lines if not parse_entry_number(line.split()[0])), None)
        detail_href = None
        if title_node is not None:
            detail_href = title_node.get("href") or _first_href(title_node)

        def value(name: str) -> Optional[str]:
            node = pick(name)
            if node is not None:
                return node_text(node)
            return _label_value(lines, tuple(profile.index_labels.get(name, ())))

        link_selector = selectors.get("links")
        anchors = block.select(link_selector) if link_selector else block.find_all("a")
        icon_node = pick("icon")
        stub = IndexStub(
            number=number,
            title=clean_title(title) or f"Work {number}",
            author=value("author"),
            category=value("category"),
            engine=value("engine"),
            streaming=value("streaming"),
            detail_url=absolute_url(detail_href, base_url),
            icon_url=absolute_url(_img_src(icon_node if icon_node is not None else block), base_url),
        )
        _fill_links(stub, anchors, base_url)
        stubs.append(stub)
    return stubs


def _fill_links(stub: IndexStub, anchors, base_url: str) -> None:
    forum, download, label = find_links(anchors, base_url)
    if not stub.forum_url and forum and forum != stub.detail_url:
        stub.forum_url = forum
    if not stub.download_url and download:
        stub.download_url = download
        stub.download_label = stub.download_label or label


def parse_index(html: str, profile: ParsingProfile, base_url: str) -> List[IndexStub]:
    """Extract entry stubs from a listing page, sorted by numeric entry number."""
    soup = BeautifulSoup(html or "", "html.parser")
    if profile.layout == "labels":
        stubs = _parse_label_blocks(soup, profile, base_url)
    else:
        stubs = _parse_columns(soup, profile, base_url)
        if not stubs and profile.entry_link_pattern:
            logger.info("No table rows on %s; falling back to entry links", base_url)
            stubs = _parse_entry_links(soup, profile, base_url)

    unique: List[IndexStub] = []
    seen = set()
    for stub in stubs:
        key = (stub.number, stub.title)
        if key in seen:
            continue
        seen.add(key)
        unique.append(stub)
    unique.sort(key=lambda stub: number_sort_key(stub.number))
    logger.debug("Parsed %d entries from %s", len(unique), base_url)
    return unique


def find_banner(html: str, profile: ParsingProfile, base_url: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    for selector in (profile.banner_selector, "img[src*='banner']", "img[src*='banar']"):
        if not selector:
            continue
        node = soup.select_one(selector)
        if node is not None and node.get("src"):
            return absolute_url(node.get("src"), base_url)
    first = soup.find("img", src=True)
    return absolute_url(first.get("src"), base_url) if first is not None else None
