import json
from pathlib import Path

import pytest

import archive_ingest.cli as cli
from archive_ingest.crawler import RunSummary
from archive_ingest.models import WorkRecord
from archive_ingest.records import write_catalog


def test_bare_source_ids_default_to_run() -> None:
    commands = ("run", "list", "audit")
    assert cli._ensure_command_prefix(["2019-kouhaku"], commands) == ("run", "2019-kouhaku")
    assert cli._ensure_command_prefix(["audit", "x"], commands) == ["audit", "x"]
    assert cli._ensure_command_prefix(["--help"], commands) == ["--help"]
    assert cli._ensure_command_prefix([], commands) == []


def test_parse_run_arguments() -> None:
    args = cli.parse_args(["2018-gw", "2019-kouhaku", "--offline", "--workers", "8", "--no-discover"])

    assert args.command == "run"
    assert args.source_ids == ["2018-gw", "2019-kouhaku"]
    assert args.offline is True
    assert args.workers == 8
    assert args.no_discover is True
    assert args.data == Path("data")


def test_list_includes_builtin_and_file_sources(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    extra = tmp_path / "sources.json"
    extra.write_text(
        json.dumps([{"id": "2099-test", "label": "Future", "base_urls": ["http://f.example/"]}]),
        encoding="utf-8",
    )

    assert cli.main(["list", "--sources", str(extra)]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert "2019-kouhaku\tVIPRPG紅白 2019" in lines
    assert "2099-test\tFuture" in lines


def test_unknown_source_exits_with_configuration_error(tmp_path: Path) -> None:
    assert cli.main(["run", "1999-nothing", "--data", str(tmp_path)]) == 2


def test_run_reports_failed_sources(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen = []

    def fake_run_source(source, config):
        seen.append((source.id, config.offline, config.discover_snapshots))
        status = "error" if source.id == "2016-gw" else "ok"
        return RunSummary(source_id=source.id, generated_at="now", status=status)

    monkeypatch.setattr(cli, "run_source", fake_run_source)

    assert cli.main(["2018-gw", "--offline", "--data", str(tmp_path)]) == 0
    assert cli.main(["run", "2016-gw", "--no-discover", "--data", str(tmp_path)]) == 1
    assert seen == [("2018-gw", True, True), ("2016-gw", False, False)]


def test_audit_prints_counts_and_rows(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    complete = WorkRecord(
        id="demo-work-01",
        source_id="demo",
        no="01",
        title="Done",
        author="A",
        category="RPG",
        engine="VX",
        streaming="OK",
        forum="http://f.example/",
        author_comment="hi",
        host_comment="good",
        icon="/icons/demo/01.png",
        screenshots=["/screenshots/demo/01.png"],
    )
    sparse = WorkRecord(id="demo-work-02", source_id="demo", no="02", title="Sparse", author="B")
    write_catalog(tmp_path / "data" / "works" / "demo.json", [complete, sparse])
    for public_path in (complete.icon, complete.screenshots[0]):
        target = tmp_path / "public" / public_path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(b"img")

    code = cli.main(
        ["audit", "demo", "--data", str(tmp_path / "data"), "--output", str(tmp_path / "public")]
    )

    assert code == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "TOTAL=2"
    assert lines[1].startswith("COUNTS=title:0,author:0,category:1,")
    assert "icon:1" in lines[1]
    assert lines[2:] == [
        "02\tSparse\tcategory|engine|streaming|forum|author_comment|host_comment|icon|screenshots"
    ]


def test_audit_without_catalog_fails(tmp_path: Path) -> None:
    assert cli.main(["audit", "demo", "--data", str(tmp_path)]) == 1
