from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from xml.sax.saxutils import escape

import pytest

from feedsync.common.config_loader import ConfigBundle, ImportSettings, load_all_configs
from feedsync.feed.reader import FeedReader
from feedsync.pipeline.agencies import AgencyResolver
from feedsync.pipeline.engine import ImportEngine, RunContext
from feedsync.pipeline.mapper import RecordMapper
from feedsync.pipeline.run_state import RunStateStore
from feedsync.pipeline.tracking import ChangeTracker
from feedsync.store.base import ContentStore
from feedsync.store.memory import InMemoryContentStore

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def record_xml(
    external_id,
    *,
    region: str = "022205",
    price: str = "200000",
    category: str | None = None,
    title: str | None = None,
    description: str = "Luminoso appartamento",
    features: dict | None = None,
    numeric: dict | None = None,
    media: list[tuple] | None = None,
    agency: dict | None = None,
    cadastral: dict | None = None,
    deleted: str | None = None,
    extra_info: str = "",
) -> str:
    info = [f"<id>{external_id}</id>", f"<price>{price}</price>", f"<comune istat=\"{region}\">Trento</comune>"]
    info.append(f"<description>{escape(description)}</description>")
    if category is not None:
        info.append(f"<categorie_id>{category}</categorie_id>")
    if title is not None:
        info.append(f"<title>{escape(title)}</title>")
    if deleted is not None:
        info.append(f"<deleted>{deleted}</deleted>")
    parts = [f"<annuncio><info>{''.join(info)}{extra_info}</info>"]
    if features:
        items = "".join(
            f'<info id="{fid}"><valore_assegnato>{value}</valore_assegnato></info>' for fid, value in features.items()
        )
        parts.append(f"<info_inserite>{items}</info_inserite>")
    if numeric:
        items = "".join(
            f'<dati id="{fid}"><valore_assegnato>{value}</valore_assegnato></dati>' for fid, value in numeric.items()
        )
        parts.append(f"<dati_inseriti>{items}</dati_inseriti>")
    if media:
        items = "".join(
            f'<allegato id="{mid}" type="{mtype}"><file_path>{escape(url)}</file_path></allegato>'
            for mid, mtype, url in media
        )
        parts.append(f"<file_allegati>{items}</file_allegati>")
    if cadastral:
        parts.append("<catasto>" + "".join(f"<{k}>{v}</{k}>" for k, v in cadastral.items()) + "</catasto>")
    if agency:
        parts.append("<agenzia>" + "".join(f"<{k}>{escape(str(v))}</{k}>" for k, v in agency.items()) + "</agenzia>")
    parts.append("</annuncio>")
    return "".join(parts)


def write_feed(path: Path, records: list[str]) -> Path:
    path.write_text(
        '<?xml version="1.0" encoding="UTF-8"?>\n<dataset>' + "".join(records) + "</dataset>\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def bundle() -> ConfigBundle:
    return load_all_configs(CONFIG_DIR)


@pytest.fixture
def settings() -> ImportSettings:
    return ImportSettings(
        chunk_size=2,
        min_chunk_size=1,
        sleep_seconds=0.0,
        max_memory_mb=4096,
        max_errors=3,
        max_execution_time=3600,
        allowed_regions=("021", "022"),
        delete_policy="soft",
        retention_days=0,
    )


@pytest.fixture
def logger() -> logging.Logger:
    test_logger = logging.getLogger("feedsync.tests")
    test_logger.setLevel(logging.DEBUG)
    return test_logger


@pytest.fixture
def make_record():
    return record_xml


@pytest.fixture
def make_feed(tmp_path: Path):
    def _make(records: list[str], name: str = "feed.xml") -> Path:
        return write_feed(tmp_path / name, records)

    return _make


class SyncHarness:
    """Tracker, store and run state shared across several engine runs in one test."""

    def __init__(self, data_dir: Path, bundle: ConfigBundle, settings: ImportSettings, logger: logging.Logger) -> None:
        self.data_dir = data_dir
        self.bundle = bundle
        self.settings = settings
        self.logger = logger
        self.tracker = ChangeTracker.from_url(f"sqlite:///{data_dir / 'state' / 'tracking.sqlite'}", logger)
        self.store: ContentStore = InMemoryContentStore()
        self.run_state = RunStateStore(data_dir)
        self.sleep = lambda _seconds: None
        self.memory_mb = 50.0

    def engine(self, **setting_overrides) -> ImportEngine:
        settings = replace(self.settings, **setting_overrides)
        return ImportEngine(
            settings=settings,
            tracker=self.tracker,
            mapper=RecordMapper(self.bundle.mapping, self.logger),
            resolver=AgencyResolver(self.tracker, self.store, self.logger),
            store=self.store,
            reader=FeedReader.from_settings(
                self.bundle.feed_schema,
                settings,
                self.logger,
                memory_probe=lambda: self.memory_mb,
            ),
            run_state=self.run_state,
            logger=self.logger,
            backup_dir=self.data_dir / "backups",
            sleep=self.sleep,
        )

    def run(self, feed_path: Path, run_id: str = "run-test", **setting_overrides) -> RunContext:
        return self.engine(**setting_overrides).run(feed_path, run_id)

    def entity(self, external_id: int):
        tracked = self.tracker.get(external_id)
        assert tracked is not None and tracked.target_id is not None
        return self.store.entities[tracked.target_id]

    def close(self) -> None:
        self.tracker.close()


@pytest.fixture
def harness(tmp_path: Path, bundle: ConfigBundle, settings: ImportSettings, logger: logging.Logger):
    sync = SyncHarness(tmp_path / "data", bundle, settings, logger)
    yield sync
    sync.close()
