from archive_ingest.utils import (
    absolute_url,
    clean_title,
    collapse_whitespace,
    find_entry_number,
    normalize_title,
    number_sort_key,
    pad_number,
    parse_entry_number,
    sanitize_multiline,
    swap_protocol,
)


def test_parse_entry_number_accepts_common_forms() -> None:
    assert parse_entry_number("05") == "05"
    assert parse_entry_number(" No.12 ") == "12"
    assert parse_entry_number("#7") == "7"
    assert parse_entry_number("3.") == "3"
    assert parse_entry_number("00") == "00"


def test_parse_entry_number_rejects_headers_and_long_numbers() -> None:
    assert parse_entry_number("No") is None
    assert parse_entry_number("作品名") is None
    assert parse_entry_number("2019") is None
    assert parse_entry_number("") is None
    assert parse_entry_number(None) is None


def test_find_entry_number_inside_text() -> None:
    assert find_entry_number("エントリーNo.05") == "05"
    assert find_entry_number("no digits") is None


def test_number_sort_key_orders_numerically_and_keeps_zero_forms_distinct() -> None:
    numbers = ["10", "2", "00", "0", "1"]
    assert sorted(numbers, key=number_sort_key) == ["0", "00", "1", "2", "10"]
    assert number_sort_key("00") != number_sort_key("0")


def test_pad_number_only_pads_digits() -> None:
    assert pad_number("5", 2) == "05"
    assert pad_number("5", 0) == "5"
    assert pad_number("ex", 2) == "ex"


def test_text_normalization() -> None:
    assert collapse_whitespace("  a \n\t b　c ") == "a b c"
    assert collapse_whitespace("   ") is None
    assert clean_title("★Sample RPG☆") == "Sample RPG"
    assert sanitize_multiline("one  \n\n\n two\n") == "one\n\ntwo"
    assert normalize_title("Sample RPG!") == normalize_title("sample　rpg")


def test_absolute_url_resolves_and_filters() -> None:
    base = "http://example.com/2018/menu.html"
    assert absolute_url("ss/01.png", base) == "http://example.com/2018/ss/01.png"
    assert absolute_url("/top.html", base) == "http://example.com/top.html"
    assert absolute_url("javascript:void(0)", base) is None
    assert absolute_url("#top", base) is None
    assert absolute_url(None, base) is None


def test_swap_protocol() -> None:
    assert swap_protocol("http://a.example/") == "https://a.example/"
    assert swap_protocol("https://a.example/") == "http://a.example/"
    assert swap_protocol("ftp://a.example/") is None
