"""Streaming feed reader: holds one record subtree in memory at a time."""

from __future__ import annotations

import gc
import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

import psutil
from lxml import etree

from feedsync.common.config_loader import FeedSchema, ImportSettings
from feedsync.common.errors import FeedAbortError, FeedError, MalformedRecordError
from feedsync.common.logging import log_event
from feedsync.common.models import MediaItem, SourceRecord

TRUTHY = {"1", "true", "yes", "si", "y"}


@dataclass(frozen=True)
class ChunkInfo:
    chunk_index: int
    chunk_size: int
    total_processed: int
    duration_seconds: float
    memory_mb: float
    next_chunk_size: int


@dataclass(frozen=True)
class ProgressTick:
    total_processed: int
    chunk_index: int
    chunk_size: int
    elapsed_seconds: float
    chunk_duration_seconds: float
    records_per_second: float
    memory_mb: float
    errors: int


@dataclass(frozen=True)
class ParseSummary:
    total_processed: int
    chunks_processed: int
    errors: int
    skipped_without_id: int
    duration_seconds: float
    peak_memory_mb: float
    final_chunk_size: int


def current_memory_mb() -> float:
    return psutil.Process().memory_info().rss / (1024 * 1024)


def _text(element: etree._Element | None) -> str:
    if element is None:
        return ""
    return "".join(element.itertext()).strip()


def _flatten_block(block: etree._Element) -> dict[str, str]:
    values: dict[str, str] = {}
    for child in block:
        if not isinstance(child.tag, str):
            continue
        values[child.tag] = _text(child)
        for attribute, value in child.attrib.items():
            values[f"{child.tag}_{attribute}"] = value.strip()
    return values


def _first(values: dict[str, str], aliases: tuple[str, ...]) -> tuple[str | None, str]:
    for alias in aliases:
        if alias in values and values[alias] != "":
            return alias, values[alias]
    return None, ""


def parse_external_id(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _number(value: str, field_name: str) -> float | None:
    if value == "":
        return None
    try:
        number = float(value.replace(",", "."))
    except ValueError as exc:
        raise MalformedRecordError(f"non-numeric {field_name}: {value!r}") from exc
    if not math.isfinite(number):
        raise MalformedRecordError(f"non-finite {field_name}: {value!r}")
    return number


def _integer(value: str, field_name: str) -> int | None:
    number = _number(value, field_name)
    return int(number) if number is not None else None


def _attribute_id(element: etree._Element, attribute: str, group: str) -> int:
    raw = element.get(attribute, "").strip()
    try:
        return int(raw)
    except ValueError as exc:
        raise MalformedRecordError(f"invalid {group} id: {raw!r}") from exc


def _value_groups(
    record_el: etree._Element,
    group_tag: str,
    item_tag: str,
    schema: FeedSchema,
    cast: Callable[[str, str], float | int | None],
) -> dict[int, float | int]:
    group = record_el.find(group_tag)
    values: dict[int, float | int] = {}
    if group is None:
        return values
    for item in group.iterchildren(item_tag):
        item_id = _attribute_id(item, schema.id_attribute, group_tag)
        value_el = item.find(schema.value_tag)
        if value_el is None:
            continue
        value = cast(_text(value_el), f"{group_tag}[{item_id}]")
        if value is not None:
            values[item_id] = value
    return values


def _media(record_el: etree._Element, schema: FeedSchema) -> tuple[MediaItem, ...]:
    group = record_el.find(schema.media_group)
    if group is None:
        return ()
    items: list[MediaItem] = []
    for item in group.iterchildren(schema.media_tag):
        url = _text(item.find(schema.media_url_tag))
        if not url:
            continue
        items.append(
            MediaItem(
                media_id=_attribute_id(item, schema.id_attribute, schema.media_group),
                media_type=item.get(schema.type_attribute, "").strip().lower(),
                url=url,
            )
        )
    return tuple(items)


def parse_record_element(record_el: etree._Element, schema: FeedSchema) -> SourceRecord | None:
    """Build a SourceRecord from one record subtree; None when it has no usable id."""
    info_el = record_el.find(schema.info_tag)
    info = _flatten_block(info_el) if info_el is not None else {}

    consumed: set[str] = set()

    def field(name: str) -> str:
        alias, value = _first(info, schema.aliases(name))
        if alias is not None:
            consumed.add(alias)
        return value

    external_id = parse_external_id(field("external_id") or None)
    if external_id is None:
        return None

    cadastral_el = record_el.find(schema.cadastral_tag)
    agency_el = record_el.find(schema.agency_tag)

    record = SourceRecord(
        external_id=external_id,
        price=_number(field("price"), "price"),
        size=_number(field("size"), "size"),
        title=field("title"),
        description=field("description"),
        abstract=field("abstract"),
        address=field("address"),
        city=field("city"),
        zip_code=field("zip_code"),
        province=field("province").upper(),
        region_code=field("region_code"),
        latitude=_number(field("latitude"), "latitude"),
        longitude=_number(field("longitude"), "longitude"),
        category_id=_integer(field("category_id"), "category_id"),
        contract=field("contract").lower(),
        energy_class=field("energy_class"),
        floor=field("floor"),
        construction_year=field("construction_year"),
        deleted=field("deleted").lower() in TRUTHY,
        features=_value_groups(record_el, schema.feature_group, schema.feature_tag, schema, _integer),
        numeric_data=_value_groups(record_el, schema.numeric_group, schema.numeric_tag, schema, _number),
        media=_media(record_el, schema),
        cadastral=_flatten_block(cadastral_el) if cadastral_el is not None else None,
        agency=_flatten_block(agency_el) if agency_el is not None else None,
        extras={key: value for key, value in info.items() if key not in consumed and value},
    )
    return record


def _release(element: etree._Element) -> None:
    element.clear(keep_tail=False)
    parent = element.getparent()
    if parent is None:
        return
    while element.getprevious() is not None:
        del parent[0]


class FeedReader:
    def __init__(
        self,
        schema: FeedSchema,
        logger: logging.Logger,
        *,
        chunk_size: int = 25,
        min_chunk_size: int = 5,
        max_memory_mb: float = 256,
        max_errors: int = 10,
        memory_probe: Callable[[], float] = current_memory_mb,
        collect: Callable[[], int] = gc.collect,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.schema = schema
        self.logger = logger
        self.chunk_size = max(1, chunk_size)
        self.min_chunk_size = max(1, min(min_chunk_size, self.chunk_size))
        self.max_memory_mb = max_memory_mb
        self.max_errors = max(1, max_errors)
        self.memory_probe = memory_probe
        self.collect = collect
        self.clock = clock
        self.error_count = 0
        self.skipped_without_id = 0
        self.peak_memory_mb = 0.0

    @classmethod
    def from_settings(cls, schema: FeedSchema, settings: ImportSettings, logger: logging.Logger, **kwargs) -> "FeedReader":
        return cls(
            schema,
            logger,
            chunk_size=settings.chunk_size,
            min_chunk_size=settings.min_chunk_size,
            max_memory_mb=settings.max_memory_mb,
            max_errors=settings.max_errors,
            **kwargs,
        )

    def reset(self) -> None:
        self.error_count = 0
        self.skipped_without_id = 0
        self.peak_memory_mb = 0.0

    def _register_error(self, exc: MalformedRecordError, position: int) -> None:
        self.error_count += 1
        log_event(
            self.logger,
            f"malformed record at position {position}: {exc}",
            level="warning",
            stage="stream",
            event="RECORD_MALFORMED",
            status="error",
            error_code=exc.error_code,
        )
        if self.error_count > self.max_errors:
            raise FeedAbortError(
                f"Malformed records exceeded threshold ({self.error_count} > {self.max_errors})"
            )

    def iter_records(self, path: Path) -> Iterator[SourceRecord]:
        """Yield records lazily; reopen the file to restart."""
        path = Path(path)
        if not path.is_file():
            raise FeedError(f"Feed file not found: {path}")

        self.error_count = 0
        self.skipped_without_id = 0
        context = etree.iterparse(
            str(path),
            events=("end",),
            tag=self.schema.record_tag,
            resolve_entities=False,
            no_network=True,
            huge_tree=True,
        )
        position = 0
        try:
            for _event, record_el in context:
                position += 1
                try:
                    record = parse_record_element(record_el, self.schema)
                except MalformedRecordError as exc:
                    self._register_error(exc, position)
                    continue
                except (ValueError, OverflowError) as exc:
                    self._register_error(MalformedRecordError(f"unparseable record: {exc}"), position)
                    continue
                finally:
                    _release(record_el)
                if record is None:
                    self.skipped_without_id += 1
                    continue
                yield record
        except etree.XMLSyntaxError as exc:
            raise FeedError(f"Feed is not well-formed: {exc}") from exc
        except OSError as exc:
            raise FeedError(f"Feed could not be read: {exc}") from exc
        finally:
            del context

    def check_resources(self) -> float:
        memory_mb = self.memory_probe()
        self.peak_memory_mb = max(self.peak_memory_mb, memory_mb)
        if memory_mb <= self.max_memory_mb:
            return memory_mb

        self.collect()
        previous = self.chunk_size
        self.chunk_size = max(self.min_chunk_size, int(self.chunk_size * 0.8))
        log_event(
            self.logger,
            f"memory {memory_mb:.1f}MB over ceiling {self.max_memory_mb}MB, chunk size {previous} -> {self.chunk_size}",
            level="warning",
            stage="stream",
            event="MEMORY_PRESSURE",
            status="warning",
        )
        return memory_mb

    def parse(
        self,
        path: Path,
        on_record: Callable[[SourceRecord], None],
        on_chunk: Callable[[ChunkInfo], None] | None = None,
        on_progress: Callable[[ProgressTick], None] | None = None,
    ) -> ParseSummary:
        started = self.clock()
        chunk_started = started
        total = 0
        in_chunk = 0
        chunks = 0
        self.peak_memory_mb = self.memory_probe()

        def close_chunk() -> None:
            nonlocal chunk_started, in_chunk, chunks
            now = self.clock()
            chunks += 1
            memory_mb = self.check_resources()
            info = ChunkInfo(
                chunk_index=chunks,
                chunk_size=in_chunk,
                total_processed=total,
                duration_seconds=now - chunk_started,
                memory_mb=round(memory_mb, 2),
                next_chunk_size=self.chunk_size,
            )
            if on_chunk is not None:
                on_chunk(info)
            if on_progress is not None:
                elapsed = self.clock() - started
                on_progress(
                    ProgressTick(
                        total_processed=total,
                        chunk_index=chunks,
                        chunk_size=in_chunk,
                        elapsed_seconds=round(elapsed, 3),
                        chunk_duration_seconds=round(info.duration_seconds, 3),
                        records_per_second=round(total / elapsed, 2) if elapsed > 0 else 0.0,
                        memory_mb=round(memory_mb, 2),
                        errors=self.error_count,
                    )
                )
            in_chunk = 0
            chunk_started = self.clock()

        for record in self.iter_records(path):
            on_record(record)
            total += 1
            in_chunk += 1
            if in_chunk >= self.chunk_size:
                close_chunk()
        if in_chunk:
            close_chunk()

        summary = ParseSummary(
            total_processed=total,
            chunks_processed=chunks,
            errors=self.error_count,
            skipped_without_id=self.skipped_without_id,
            duration_seconds=round(self.clock() - started, 3),
            peak_memory_mb=round(self.peak_memory_mb, 2),
            final_chunk_size=self.chunk_size,
        )
        log_event(
            self.logger,
            f"streaming parse completed: {total} records in {chunks} chunks",
            stage="stream",
            event="STREAM_END",
            status="ok",
            rows_out=total,
        )
        return summary
