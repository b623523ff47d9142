import pytest
from bs4 import BeautifulSoup

from archive_ingest.listing import find_banner, header_positions, parse_index
from archive_ingest.sources import (
    DEFAULT_HEADER_LABELS,
    ParsingProfile,
    SourceConfigError,
    builtin_sources,
)

BASE = "http://fest.example/2018/menu.html"

COLUMN_PAGE = """
<html><body><table>
<tr><th>No</th><th>アイコン</th><th>作品名</th><th>ジャンル</th><th>DL</th><th>配信</th><th>感想</th></tr>
<tr><td colspan="7">------</td></tr>
<tr>
  <td>10</td><td><img src="icon/10.png"></td>
  <td><a href="entry/10.html">Later Game</a><br>Ken</td>
  <td>ACT<br>WOLF</td><td></td><td>NG</td><td></td>
</tr>
<tr>
  <td>05</td><td><img src="icon/05.png"></td>
  <td><a href="entry/05.html">★Sample RPG</a><br>Jane</td>
  <td>RPG<br>ツクールVX</td>
  <td><a href="https://drive.google.com/file/d/abc">DL (12MB)</a></td>
  <td>OK</td>
  <td><a href="http://jbbs.shitaraba.net/bbs/read.cgi/game/1/05">感想</a></td>
</tr>
</table></body></html>
"""


def test_columns_layout_extracts_fields_and_sorts_by_number() -> None:
    stubs = parse_index(COLUMN_PAGE, ParsingProfile(), BASE)

    assert [stub.number for stub in stubs] == ["05", "10"]
    first = stubs[0]
    assert first.title == "Sample RPG"
    assert first.author == "Jane"
    assert first.category == "RPG"
    assert first.engine == "ツクールVX"
    assert first.streaming == "OK"
    assert first.detail_url == "http://fest.example/2018/entry/05.html"
    assert first.icon_url == "http://fest.example/2018/icon/05.png"
    assert first.download_url == "https://drive.google.com/file/d/abc"
    assert first.download_label == "12MB"
    assert first.forum_url == "http://jbbs.shitaraba.net/bbs/read.cgi/game/1/05"
    assert stubs[1].download_url is None
    assert stubs[1].streaming == "NG"


def test_header_row_remaps_reordered_columns() -> None:
    html = """
    <table>
      <tr><th>作品名</th><th>No.</th><th>ジャンル</th></tr>
      <tr><td><a href="e7.html">Title</a><br>Auth</td><td>7</td><td>ACT<br>Unity</td></tr>
    </table>
    """
    stubs = parse_index(html, ParsingProfile(), BASE)

    assert len(stubs) == 1
    assert stubs[0].number == "7"
    assert stubs[0].title == "Title"
    assert stubs[0].author == "Auth"
    assert stubs[0].engine == "Unity"


def test_header_positions_requires_a_header_before_data() -> None:
    soup = BeautifulSoup("<table><tr><td>1</td><td>作品名</td></tr></table>", "html.parser")
    assert header_positions(soup.find_all("tr"), DEFAULT_HEADER_LABELS) is None


def test_merged_cells_keep_later_column_positions() -> None:
    html = """
    <table>
      <tr><td>12</td><td colspan="2"><a href="e12.html">Merged</a><br>Bob</td><td>ACT<br>WOLF</td></tr>
    </table>
    """
    stubs = parse_index(html, ParsingProfile(), BASE)

    assert stubs[0].title == "Merged"
    assert stubs[0].author == "Bob"
    assert stubs[0].category == "ACT"
    assert stubs[0].engine == "WOLF"
    assert stubs[0].icon_url is None


def test_leading_zero_numbers_stay_distinct() -> None:
    html = """
    <table>
      <tr><td>00</td><td></td><td>Zero Game</td></tr>
      <tr><td>0</td><td></td><td>Other Game</td></tr>
    </table>
    """
    stubs = parse_index(html, ParsingProfile(), BASE)

    assert [stub.number for stub in stubs] == ["0", "00"]
    assert stubs[1].title == "Zero Game"
    assert stubs[1].author is None


def test_number_in_header_with_nested_span_separator() -> None:
    html = """
    <table>
      <tr>
        <th>03</th><td><img src="i/03.gif"></td>
        <td><a href="e03.html">Game Title</a><span>Author Name</span></td>
        <td>RPG<small>WOLF RPGエディター</small></td>
      </tr>
    </table>
    """
    profile = ParsingProfile(number_in_header=True, separator="span")
    stubs = parse_index(html, profile, "http://old.example/2016GW/index.html")

    assert stubs[0].number == "03"
    assert stubs[0].title == "Game Title"
    assert stubs[0].author == "Author Name"
    assert stubs[0].category == "RPG"
    assert stubs[0].engine == "WOLF RPGエディター"
    assert stubs[0].icon_url == "http://old.example/2016GW/i/03.gif"


def test_labels_layout_with_field_selectors() -> None:
    html = """
    <div class="tyuuou2">
      <div class="number">エントリーNo.05</div>
      <div class="icon"><img src="../icon/05.png"></div>
      <div class="name"><b><a href="../entry/05.html">Sample RPG</a></b></div>
      <div class="author"><p>Jane</p></div>
      <div class="genre">RPG</div>
      <div class="tkool">ツクールMV</div>
      <div class="downlord">
        <a href="https://www.dropbox.com/s/x/game.zip">ダウンロード(30MB)</a>
        <a href="https://jbbs.shitaraba.net/bbs/read.cgi/game/1/">感想スレ</a>
      </div>
    </div>
    """
    profile = builtin_sources()["2019-kouhaku"].profile
    stubs = parse_index(html, profile, "https://fest2019.example/list/")

    stub = stubs[0]
    assert stub.number == "05"
    assert stub.title == "Sample RPG"
    assert stub.author == "Jane"
    assert stub.category == "RPG"
    assert stub.engine == "ツクールMV"
    assert stub.detail_url == "https://fest2019.example/entry/05.html"
    assert stub.icon_url == "https://fest2019.example/icon/05.png"
    assert stub.download_url == "https://www.dropbox.com/s/x/game.zip"
    assert stub.download_label == "30MB"
    assert stub.forum_url == "https://jbbs.shitaraba.net/bbs/read.cgi/game/1/"


def test_labels_layout_scans_inline_labels() -> None:
    html = """
    <div class="entry">No.07 <a href="e07.html">Quiet Game</a><br>作者：Ken<br>
    ジャンル：ADV<br>ツール：ティラノ<br>配信：条件付き<br>
    <a href="http://files.example/dl/game.zip">DL</a></div>
    <div class="entry">お知らせ</div>
    """
    profile = ParsingProfile(layout="labels", row_selector="div.entry")
    stubs = parse_index(html, profile, BASE)

    assert len(stubs) == 1
    stub = stubs[0]
    assert stub.number == "07"
    assert stub.title == "Quiet Game"
    assert stub.author == "Ken"
    assert stub.category == "ADV"
    assert stub.engine == "ティラノ"
    assert stub.streaming == "条件付き"
    assert stub.download_url == "http://files.example/dl/game.zip"


def test_find_banner_prefers_banner_images() -> None:
    html = '<img src="img/logo.gif"><img src="img/topbanner.png">'
    assert find_banner(html, ParsingProfile(), BASE) == "http://fest.example/2018/img/topbanner.png"
    assert find_banner('<img src="a.gif">', ParsingProfile(), BASE) == "http://fest.example/2018/a.gif"
    assert find_banner("<p>none</p>", ParsingProfile(), BASE) is None


def test_padding_profile_keeps_the_printed_number() -> None:
    html = "<table><tr><td>5</td><td></td><td>Five</td></tr></table>"
    stubs = parse_index(html, ParsingProfile(pad_number=2), BASE)

    assert stubs[0].number == "5"


ENTRY_LINK_PAGE = """
<table><tr>
  <td><a href="entry05.html"><img src="icon/e05.gif"></a></td>
  <td><a href="entry05.html">Game Five<br>Author Five</a></td>
  <td><a href="dl/five.zip">DL</a></td>
  <td><a href="http://jbbs.shitaraba.net/bbs/read.cgi/game/5/">感想</a></td>
</tr></table>
<p><a href="entry12.html">Twelve</a> <a href="about.html">About</a></p>
"""


def test_entry_links_are_parsed_when_no_table_row_qualifies() -> None:
    profile = ParsingProfile(number_in_header=True, entry_link_pattern=r"entry(\d{1,3})\.html")
    stubs = parse_index(ENTRY_LINK_PAGE, profile, BASE)

    assert [stub.number for stub in stubs] == ["05", "12"]
    five = stubs[0]
    assert five.title == "Game Five"
    assert five.author == "Author Five"
    assert five.detail_url == "http://fest.example/2018/entry05.html"
    assert five.icon_url == "http://fest.example/2018/icon/e05.gif"
    assert five.download_url == "http://fest.example/2018/dl/five.zip"
    assert five.forum_url == "http://jbbs.shitaraba.net/bbs/read.cgi/game/5/"
    assert stubs[1].icon_url is None


def test_entry_links_are_ignored_without_a_pattern() -> None:
    assert parse_index(ENTRY_LINK_PAGE, ParsingProfile(number_in_header=True), BASE) == []


def test_entry_link_pattern_must_capture_the_number() -> None:
    with pytest.raises(SourceConfigError):
        ParsingProfile(entry_link_pattern=r"entry\d+\.html")
