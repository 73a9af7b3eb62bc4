"""CLI entrypoint for the real-estate feed sync pipeline."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from feedsync.common.config_loader import ConfigBundle, load_all_configs
from feedsync.common.constants import COMMANDS, EXIT_HARD_FAIL, EXIT_PARTIAL, EXIT_SUCCESS
from feedsync.common.errors import PipelineError
from feedsync.common.http import HttpClient, RetryConfig
from feedsync.common.ids import generate_run_id
from feedsync.common.logging import build_logger, close_logger, log_event
from feedsync.feed.download import download_feed
from feedsync.feed.reader import FeedReader
from feedsync.pipeline.agencies import AgencyResolver, cleanup_orphans
from feedsync.pipeline.engine import ImportEngine, RunContext
from feedsync.pipeline.mapper import RecordMapper
from feedsync.pipeline.notify import build_notifier, notify_run_result
from feedsync.pipeline.run_state import RunStateStore
from feedsync.pipeline.tracking import ChangeTracker
from feedsync.store.base import ContentStore
from feedsync.store.memory import InMemoryContentStore
from feedsync.store.sql import SqlContentStore


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--feed", default=None, help="Import a local XML file instead of downloading")
    parser.add_argument("--run-id", default=None)
    parser.add_argument("--config-dir", default="./config")
    parser.add_argument("--overlay-config-dir", default=None)
    parser.add_argument("--data-dir", default="./data")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARN", "ERROR"])
    parser.add_argument("--dry-run", action="store_true", help="Write entities to an in-memory store")
    parser.add_argument("--older-than-days", type=int, default=None)
    return parser.parse_args(argv)


def _run_state(bundle: ConfigBundle, data_dir: Path) -> RunStateStore:
    stale_after = max(2 * bundle.import_settings.max_execution_time, 600)
    return RunStateStore(data_dir, stale_lock_seconds=stale_after)


def _tracker(bundle: ConfigBundle, data_dir: Path, logger: logging.Logger) -> ChangeTracker:
    tracker = ChangeTracker.from_url(bundle.storage.resolve(data_dir).tracking_url, logger)
    tracker.ensure_schema()
    return tracker


def _store(bundle: ConfigBundle, data_dir: Path, dry_run: bool) -> ContentStore:
    if dry_run:
        return InMemoryContentStore()
    return SqlContentStore.from_url(bundle.storage.resolve(data_dir).content_url)


def _http_client() -> HttpClient:
    return HttpClient(retry=RetryConfig(max_attempts=3))


def build_engine(
    bundle: ConfigBundle,
    data_dir: Path,
    logger: logging.Logger,
    *,
    tracker: ChangeTracker,
    store: ContentStore,
) -> ImportEngine:
    settings = bundle.import_settings
    return ImportEngine(
        settings=settings,
        tracker=tracker,
        mapper=RecordMapper(bundle.mapping, logger),
        resolver=AgencyResolver(tracker, store, logger),
        store=store,
        reader=FeedReader.from_settings(bundle.feed_schema, settings, logger),
        run_state=_run_state(bundle, data_dir),
        logger=logger,
        backup_dir=data_dir / "backups",
    )


def _exit_code(ctx: RunContext) -> int:
    if ctx.status == "failed":
        return EXIT_HARD_FAIL
    if ctx.status == "partial":
        return EXIT_PARTIAL
    return EXIT_SUCCESS


def _download(bundle: ConfigBundle, data_dir: Path, run_id: str, logger: logging.Logger) -> Path:
    with _http_client() as client:
        return download_feed(bundle.feed, data_dir, run_id, client, logger)


def _import(args: argparse.Namespace, bundle: ConfigBundle, data_dir: Path, run_id: str, logger: logging.Logger) -> int:
    feed_path = Path(args.feed) if args.feed else _download(bundle, data_dir, run_id, logger)
    tracker = _tracker(bundle, data_dir, logger)
    store = _store(bundle, data_dir, args.dry_run)
    try:
        engine = build_engine(bundle, data_dir, logger, tracker=tracker, store=store)
        ctx = engine.run(feed_path, run_id)
        result = engine.run_state.read_last_result()
        if result is not None and result.get("run_id") == run_id:
            with _http_client() as client:
                notifier = build_notifier(bundle.notifications, logger, client)
                notify_run_result(notifier, result, bundle.notifications, logger)
        if args.command == "all" and ctx.status != "failed":
            cleanup_orphans(tracker, store, logger)
        return _exit_code(ctx)
    finally:
        store.close()
        tracker.close()


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def run_command(args: argparse.Namespace) -> int:
    run_id = args.run_id or generate_run_id()
    config_dir = Path(args.config_dir)
    overlay_config_dir = Path(args.overlay_config_dir) if args.overlay_config_dir else None
    data_dir = Path(args.data_dir)

    bundle = load_all_configs(config_dir, overlay_config_dir=overlay_config_dir)
    run_state = _run_state(bundle, data_dir)

    if args.command == "stop":
        target = run_state.request_stop()
        _print_json({"stop_requested": target is not None, "running": target})
        return EXIT_SUCCESS

    logger = build_logger(run_id, data_dir=data_dir, level=args.log_level)
    try:
        log_event(logger, "command start", run_id=run_id, stage=args.command, event="COMMAND_START", status="ok")
        if args.command == "status":
            tracker = _tracker(bundle, data_dir, logger)
            try:
                _print_json(
                    {
                        "running": run_state.lock_holder(),
                        "progress": run_state.read_progress(),
                        "last_result": run_state.read_last_result(),
                        "tracking": tracker.statistics(),
                    }
                )
            finally:
                tracker.close()
            return EXIT_SUCCESS

        if args.command == "download":
            _print_json({"feed_path": str(_download(bundle, data_dir, run_id, logger))})
            return EXIT_SUCCESS

        if args.command in ("import", "all"):
            return _import(args, bundle, data_dir, run_id, logger)

        tracker = _tracker(bundle, data_dir, logger)
        try:
            if args.command == "purge":
                days = args.older_than_days or bundle.import_settings.retention_days
                _print_json({"purged": tracker.purge(days)})
            else:
                store = _store(bundle, data_dir, args.dry_run)
                try:
                    _print_json({"orphans_removed": cleanup_orphans(tracker, store, logger)})
                finally:
                    store.close()
        finally:
            tracker.close()
        return EXIT_SUCCESS
    except PipelineError as exc:
        log_event(
            logger,
            f"command failed: {exc}",
            level="error",
            run_id=run_id,
            stage=args.command,
            event="COMMAND_FAIL",
            status="error",
            error_code=exc.error_code,
        )
        return EXIT_HARD_FAIL
    finally:
        close_logger(logger)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    try:
        return run_command(args)
    except PipelineError:
        return EXIT_HARD_FAIL
    except Exception:
        return EXIT_HARD_FAIL


if __name__ == "__main__":
    raise SystemExit(main())
