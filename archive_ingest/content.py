"""HTML fragment helpers and detail-page field extraction."""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag

from .models import DetailFields
from .sources import LabelSet, ParsingProfile
from .utils import absolute_url, collapse_whitespace, sanitize_multiline, strip_leading_brackets

BR_PATTERN = re.compile(r"<br\s*/?\s*>", re.IGNORECASE)
BRACKETS_PATTERN = re.compile(r"[\[\]()（）【】〔〕<>＜＞]")
IMAGE_PATH_PATTERN = re.compile(r"\.(?:png|jpe?g|gif|bmp)$", re.IGNORECASE)
QUOTED_IMAGE_PATTERN = re.compile(r"""([^\s"'();,=]+\.(?:png|jpe?g|gif|bmp))""", re.IGNORECASE)
EXCLUDED_IMAGE_PATTERN = re.compile(r"counter|/icons?/", re.IGNORECASE)

DOWNLOAD_TEXT_PATTERN = re.compile(r"ダウンロード|download|\bDL\b", re.IGNORECASE)
DOWNLOAD_URL_PATTERN = re.compile(
    r"drive\.google|docs\.google|dropbox|onedrive|1drv\.ms|mega\.(?:nz|co\.nz)|mediafire"
    r"|getuploader|axfc|firestorage|bowlroll|storage\.googleapis|freem\.ne\.jp|itch\.io"
    r"|\.(?:zip|lzh|rar|7z|exe)(?:[?#]|$)",
    re.IGNORECASE,
)
FORUM_TEXT_PATTERN = re.compile(r"感想|掲示板|スレ|BBS|forum|レビュー", re.IGNORECASE)
FORUM_URL_PATTERN = re.compile(r"jbbs|shitaraba|read\.cgi|/bbs|thread|forum|2ch\.|5ch\.", re.IGNORECASE)
DOWNLOAD_LABEL_PATTERN = re.compile(r"[(（]\s*([^)）]+?)\s*[)）]")

LABEL_TIERS = (("td", "th"), ("dt", "dd", "li", "p", "div", "span", "font"))
LABEL_LINE_PATTERN = re.compile(r"^(?:[【\[〔][^】\]〕]{1,16}[】\]〕]|[^\s:：]{1,16}\s*[:：](?!//))")


def node_text(node: Optional[Tag]) -> Optional[str]:
    if node is None:
        return None
    return collapse_whitespace(node.get_text())


def html_to_text(html: str) -> Optional[str]:
    """Strip tags from a fragment, turning line breaks into newlines."""
    if not html:
        return None
    with_newlines = BR_PATTERN.sub("\n", html)
    text = BeautifulSoup(with_newlines, "html.parser").get_text()
    return sanitize_multiline(text)


def split_lines(node: Tag) -> List[str]:
    """Split a cell's contents on line breaks into trimmed non-empty lines."""
    text = html_to_text(node.decode_contents()) or ""
    return [line for line in text.split("\n") if line]


def classify_link(href: Optional[str], text: Optional[str]) -> Optional[str]:
    """Return "download", "forum" or None for an anchor."""
    href = href or ""
    text = text or ""
    if DOWNLOAD_URL_PATTERN.search(href) or DOWNLOAD_TEXT_PATTERN.search(text):
        return "download"
    if FORUM_URL_PATTERN.search(href) or FORUM_TEXT_PATTERN.search(text):
        return "forum"
    return None


def download_label(text: Optional[str]) -> Optional[str]:
    match = DOWNLOAD_LABEL_PATTERN.search(text or "")
    return collapse_whitespace(match.group(1)) if match else None


def find_links(
    anchors: Iterable[Tag], base_url: str
) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """First forum link, first download link and its size label among anchors."""
    forum: Optional[str] = None
    download: Optional[str] = None
    label: Optional[str] = None
    for anchor in anchors:
        href = anchor.get("href")
        text = node_text(anchor)
        kind = classify_link(href, text)
        url = absolute_url(href, base_url)
        if not url or not kind:
            continue
        if kind == "download" and download is None:
            download = url
            label = download_label(text) or download_label(node_text(anchor.parent))
        elif kind == "forum" and forum is None:
            forum = url
    return forum, download, label


def _normalized_label_text(node: Tag) -> str:
    text = collapse_whitespace(node.get_text()) or ""
    return BRACKETS_PATTERN.sub("", text)


def _matches_label(text: str, label: str) -> bool:
    return text.startswith(label) or f"{label}：" in text or f"{label}:" in text


def _innermost(matches: List[Tag]) -> List[Tag]:
    outer = set()
    for match in matches:
        for parent in match.parents:
            outer.add(id(parent))
    return [match for match in matches if id(match) not in outer]


def _label_pattern(label: str, strict: bool) -> re.Pattern:
    tail = r"(?:[:：]\s*|$)" if strict else r"[:：]?\s*"
    return re.compile(r"[【\[(（〔]?" + re.escape(label) + r"[】\])）〕]?\s*" + tail)


def _locate_label(lines: Sequence[str], label: str) -> Optional[Tuple[int, str]]:
    """Line holding the label and the text after it, or None when the label is absent.

    A label followed by a separator or the line end is preferred, so ``作者``
    does not anchor on a ``作者コメント：`` line that happens to come first.
    """
    for strict in (True, False):
        pattern = _label_pattern(label, strict)
        for position, line in enumerate(lines):
            match = pattern.search(line)
            if match:
                return position, line[match.end():].strip()
    return None


def _value_from_cell(cell: Tag, label: str) -> Optional[str]:
    lines = [
        collapse_whitespace(html_to_text(part)) or ""
        for part in BR_PATTERN.split(cell.decode_contents())
    ]
    value: Optional[str] = None
    located = _locate_label(lines, label)
    if located is not None:
        position, inline = located
        collected = [inline] if inline else []
        for line in lines[position + 1:]:
            if not line:
                continue
            # The next labelled line starts another field.
            if LABEL_LINE_PATTERN.match(line):
                break
            collected.append(line)
        value = sanitize_multiline("\n".join(collected))
    if not value:
        sibling_names = ["dd"] if cell.name == "dt" else ["td", "th"]
        sibling = cell.find_next_sibling(sibling_names)
        if sibling is not None:
            value = html_to_text(sibling.decode_contents())
    return strip_leading_brackets(value)


def find_labeled_value(
    soup: BeautifulSoup | Tag,
    labels: Sequence[str],
    exclude: Sequence[str] = (),
) -> Optional[str]:
    """Value of the innermost cell anchored by the first matching label synonym."""
    for label in labels:
        for tags in LABEL_TIERS:
            matches = []
            for node in soup.find_all(tags):
                text = _normalized_label_text(node)
                if not _matches_label(text, label):
                    continue
                if any(text.startswith(other) for other in exclude if other != label):
                    continue
                matches.append(node)
            for cell in _innermost(matches):
                value = _value_from_cell(cell, label)
                if value:
                    return value
    return None


def content_regions(soup: BeautifulSoup, selector: Optional[str]) -> List[Tag]:
    """Resolve a comma-separated selector list by priority, not document order."""
    if selector:
        for part in selector.split(","):
            part = part.strip()
            if not part:
                continue
            found = soup.select(part)
            if found:
                return found
    return [soup.body or soup]


def collect_screenshots(regions: Iterable[Tag], base_url: str) -> List[str]:
    """Image references, hover-swap targets and image links, deduplicated."""
    found: List[str] = []

    def add(reference: Optional[str]) -> None:
        url = absolute_url(reference, base_url)
        if not url or url in found:
            return
        if not IMAGE_PATH_PATTERN.search(urlparse(url).path):
            return
        if EXCLUDED_IMAGE_PATTERN.search(url):
            return
        found.append(url)

    for region in regions:
        for img in region.find_all("img"):
            add(img.get("src"))
            for name, value in img.attrs.items():
                if name == "src":
                    continue
                values = value if isinstance(value, list) else [value]
                for item in values:
                    for match in QUOTED_IMAGE_PATTERN.findall(str(item)):
                        add(match)
        for anchor in region.find_all("a"):
            add(anchor.get("href"))
    return found


def parse_detail(html: str, base_url: str, profile: ParsingProfile) -> DetailFields:
    """Extract long-form fields, links and screenshot references from a detail page."""
    if not html:
        return DetailFields()
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    labels: LabelSet = profile.detail_labels
    comment_labels = labels.comment_labels()
    regions = content_regions(soup, profile.content_selector)
    anchors = [anchor for region in regions for anchor in region.find_all("a")]
    forum, download, label = find_links(anchors, base_url)

    return DetailFields(
        author=collapse_whitespace(find_labeled_value(soup, labels.author, exclude=comment_labels)),
        category=collapse_whitespace(find_labeled_value(soup, labels.category)),
        engine=collapse_whitespace(find_labeled_value(soup, labels.engine)),
        streaming=collapse_whitespace(find_labeled_value(soup, labels.streaming)),
        author_comment=find_labeled_value(soup, labels.author_comment, exclude=labels.host_comment),
        host_comment=find_labeled_value(soup, labels.host_comment),
        forum_url=forum,
        download_url=download,
        download_label=label,
        screenshots=collect_screenshots(regions, base_url),
    )
