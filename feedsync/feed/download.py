"""Feed acquisition: authenticated download and archive extraction."""

from __future__ import annotations

import gzip
import logging
import shutil
import tarfile
import time
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from feedsync.common.config_loader import FeedSettings
from feedsync.common.errors import FeedError
from feedsync.common.fs import ensure_dir, remove_older_than
from feedsync.common.http import HttpClient, TimeoutConfig
from feedsync.common.logging import log_event


def _archive_name(url: str, run_id: str) -> str:
    basename = PurePosixPath(urlparse(url).path).name
    return f"{run_id}_{basename or 'feed.xml'}"


def _safe_member(member: tarfile.TarInfo) -> bool:
    path = PurePosixPath(member.name)
    return member.isfile() and not path.is_absolute() and ".." not in path.parts


def extract_feed(archive: Path, target_dir: Path) -> Path:
    """Return the XML document inside ``archive`` (or ``archive`` itself when it is plain XML)."""
    name = archive.name.lower()
    ensure_dir(target_dir)
    if name.endswith((".tar.gz", ".tgz", ".tar")):
        try:
            with tarfile.open(archive, "r:*") as tar:
                members = [m for m in tar.getmembers() if _safe_member(m) and m.name.lower().endswith(".xml")]
                if not members:
                    raise FeedError(f"No XML document inside {archive.name}")
                member = members[0]
                target = target_dir / f"{archive.name.split('.')[0]}_{PurePosixPath(member.name).name}"
                source = tar.extractfile(member)
                if source is None:
                    raise FeedError(f"Unreadable archive member {member.name}")
                with source, target.open("wb") as out:
                    shutil.copyfileobj(source, out)
        except tarfile.TarError as exc:
            raise FeedError(f"Corrupt feed archive {archive.name}: {exc}") from exc
        return target
    if name.endswith(".gz"):
        target = target_dir / archive.name[: -len(".gz")]
        try:
            with gzip.open(archive, "rb") as source, target.open("wb") as out:
                shutil.copyfileobj(source, out)
        except (OSError, EOFError) as exc:
            raise FeedError(f"Corrupt gzip feed {archive.name}: {exc}") from exc
        return target
    return archive


def download_feed(
    settings: FeedSettings,
    data_dir: Path,
    run_id: str,
    client: HttpClient,
    logger: logging.Logger,
) -> Path:
    if not settings.url:
        raise FeedError("Feed URL is not configured")

    raw_dir = data_dir / "raw"
    ensure_dir(raw_dir)
    archive = raw_dir / _archive_name(settings.url, run_id)
    auth = (settings.username, settings.password) if settings.username else None
    started = time.monotonic()
    written = client.download_to(
        settings.url,
        archive,
        auth=auth,
        max_bytes=settings.max_bytes,
        timeout=TimeoutConfig(connect=20.0, read=settings.timeout_seconds),
    )
    if written == 0:
        archive.unlink(missing_ok=True)
        raise FeedError(f"Downloaded feed is empty: {settings.url}")

    feed_path = extract_feed(archive, raw_dir)
    log_event(
        logger,
        f"feed downloaded to {feed_path}",
        run_id=run_id,
        stage="download",
        event="DOWNLOAD_END",
        status="ok",
        rows_out=written,
        duration_ms=int((time.monotonic() - started) * 1000),
    )

    removed = remove_older_than(raw_dir, settings.keep_downloads_hours * 3600, keep=feed_path)
    if removed:
        log_event(
            logger,
            f"removed {len(removed)} old downloads",
            run_id=run_id,
            stage="download",
            event="DOWNLOAD_CLEANUP",
            status="ok",
        )
    return feed_path
