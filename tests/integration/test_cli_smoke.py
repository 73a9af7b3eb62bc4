import json
from pathlib import Path

import pytest

from feedsync.cli import parse_args, run_command
from feedsync.store.sql import SqlContentStore

AGENCY = {"id": "7", "ragione_sociale": "Alpi Immobiliare"}


def _overlay(tmp_path: Path) -> Path:
    overlay = tmp_path / "overlay"
    overlay.mkdir()
    (overlay / "settings.yml").write_text(
        """import:
  sleep_seconds: 0
  backup_before_import: false
""",
        encoding="utf-8",
    )
    return overlay


@pytest.mark.integration
def test_cli_all_imports_local_feed_and_writes_report(tmp_path: Path, make_feed, make_record):
    data_dir = tmp_path / "data"
    feed = make_feed(
        [
            make_record(100, features={2: 3}, media=[(1, "foto", "https://img.test/1.jpg")], agency=AGENCY),
            make_record(200, region="099001"),
        ]
    )
    args = parse_args(
        [
            "all",
            "--feed",
            str(feed),
            "--config-dir",
            "config",
            "--overlay-config-dir",
            str(_overlay(tmp_path)),
            "--data-dir",
            str(data_dir),
            "--run-id",
            "run-test",
        ]
    )

    exit_code = run_command(args)

    assert exit_code == 0
    report = json.loads((data_dir / "out" / "reports" / "last_run.json").read_text(encoding="utf-8"))
    assert report["run_id"] == "run-test"
    assert report["counts"]["inserted"] == 1
    assert report["counts"]["filtered_out"] == 1
    assert (data_dir / "run_meta" / "run-test.result.json").exists()
    assert (data_dir / "run_meta" / "run-test.log.jsonl").exists()

    store = SqlContentStore.from_url(f"sqlite:///{data_dir / 'out' / 'content.sqlite'}")
    try:
        entity_id = store.find_by_external_id(100)
        assert store.get_fields(entity_id)["title"] == "Immobile a Trento"
        assert [m["role"] for m in store.get_media(entity_id)] == ["featured"]
        assert store.get_relation(entity_id, "agency") == store.find_by_external_id(7, kind="agency")
    finally:
        store.close()


@pytest.mark.integration
def test_cli_dry_run_leaves_content_store_untouched(tmp_path: Path, make_feed, make_record):
    data_dir = tmp_path / "data"
    feed = make_feed([make_record(100)])
    args = parse_args(
        [
            "import",
            "--feed",
            str(feed),
            "--overlay-config-dir",
            str(_overlay(tmp_path)),
            "--data-dir",
            str(data_dir),
            "--dry-run",
        ]
    )

    assert run_command(args) == 0
    assert not (data_dir / "out" / "content.sqlite").exists()
    assert (data_dir / "state" / "tracking.sqlite").exists()


@pytest.mark.integration
def test_cli_import_of_unreadable_feed_fails_hard(tmp_path: Path):
    args = parse_args(
        [
            "import",
            "--feed",
            str(tmp_path / "missing.xml"),
            "--overlay-config-dir",
            str(_overlay(tmp_path)),
            "--data-dir",
            str(tmp_path / "data"),
            "--run-id",
            "run-missing",
        ]
    )

    assert run_command(args) == 20
    report = json.loads((tmp_path / "data" / "out" / "reports" / "last_run.json").read_text(encoding="utf-8"))
    assert report["status"] == "failed"
    assert report["error_code"] == "FEED_ERROR"
