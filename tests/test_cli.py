"""
Tests for the maintenance command-line utility.
"""

import json
from unittest.mock import patch

import pytest

from scripts.maintenance import build_parser, main


@pytest.fixture
def cli_engine(engine):
    with patch("scripts.maintenance.Engine") as engine_cls:
        engine_cls.from_settings.return_value = engine
        yield engine


def test_requires_an_operation():
    with pytest.raises(SystemExit):
        main([])


def test_parser_options():
    args = build_parser().parse_args(["--backfill", "--type", "file", "--batch-size", "5", "--dry-run"])
    assert args.backfill
    assert args.type == "file"
    assert args.batch_size == 5
    assert args.dry_run


def test_backfill(cli_engine, make_item, capsys):
    for i in range(3):
        cli_engine.add_content(make_item(f"m{i}", f"note {i}"), embed=False)

    assert main(["--backfill", "--batch-size", "2"]) == 0

    output = capsys.readouterr().out
    assert "Operation: backfill" in output
    assert "Processed: 3" in output
    assert "Status: SUCCESS" in output


def test_dedup_exit_code_when_flagged(cli_engine, make_item, capsys):
    cli_engine.add_content(make_item("k1", "kickoff roadmap", type="knowledge", details={"title": "A"}))
    cli_engine.add_content(make_item("k2", "kickoff roadmap", type="knowledge", details={"title": "A"}))

    assert main(["--dedup", "knowledge", "--json"]) == 2

    data = json.loads(capsys.readouterr().out)
    assert data["runs"][0]["flagged_duplicates"] == 1


def test_failures_exit_code(cli_engine, make_item, capsys):
    cli_engine.add_content(make_item("m1", "hello"), embed=False)

    with patch.object(cli_engine.pipeline, "embed_and_store_many", side_effect=RuntimeError("boom")):
        assert main(["--backfill", "--quiet"]) == 1

    assert "Errors:" in capsys.readouterr().out


def test_list_runs(cli_engine, capsys):
    cli_engine.maintenance.run_orphan_cleanup()

    assert main(["--list-runs", "--json"]) == 0

    runs = json.loads(capsys.readouterr().out)
    assert [r["operation"] for r in runs] == ["orphan_cleanup"]


def test_invalid_type_reports_error(cli_engine, capsys):
    assert main(["--backfill", "--type", "video"]) == 1
    assert "ERROR" in capsys.readouterr().out
