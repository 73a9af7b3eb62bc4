"""Import orchestrator: streams the feed and syncs each record through tracker, mapper and store."""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from feedsync.common.config_loader import ImportSettings
from feedsync.common.constants import MAX_RECORDED_ERRORS
from feedsync.common.errors import (
    MappingError,
    PipelineError,
    RunInProgressError,
    StopRequestedError,
    TrackingError,
)
from feedsync.common.logging import log_event
from feedsync.common.models import ChangeAction, DenormalizedFields, ProgressSnapshot, SourceRecord
from feedsync.common.time_utils import format_duration, utc_timestamp_iso
from feedsync.feed.reader import ChunkInfo, FeedReader, ProgressTick
from feedsync.pipeline.agencies import AgencyResolver
from feedsync.pipeline.mapper import RecordMapper
from feedsync.pipeline.run_state import RunStateStore
from feedsync.pipeline.tracking import ChangeTracker
from feedsync.store.base import ContentStore
from feedsync.store.writer import persist_entity


class RunState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    RECONCILING = "reconciling"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {RunState.COMPLETED, RunState.FAILED}


@dataclass
class RunStats:
    total_in_feed: int = 0
    filtered_out: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    parse_errors: int = 0
    skipped_without_id: int = 0
    deleted_in_feed: int = 0
    reconciled_deleted: int = 0
    target_deletions: int = 0
    purged: int = 0
    chunks_processed: int = 0
    media_attached: int = 0
    media_reused: int = 0
    media_removed: int = 0
    regions_found: Counter = field(default_factory=Counter)
    categories_found: Counter = field(default_factory=Counter)

    def counts(self) -> dict[str, int]:
        return {
            "total_in_feed": self.total_in_feed,
            "filtered_out": self.filtered_out,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors + self.parse_errors,
            "record_errors": self.errors,
            "parse_errors": self.parse_errors,
            "skipped_without_id": self.skipped_without_id,
            "deleted_in_feed": self.deleted_in_feed,
            "reconciled_deleted": self.reconciled_deleted,
            "target_deletions": self.target_deletions,
            "purged": self.purged,
            "media_attached": self.media_attached,
            "media_reused": self.media_reused,
            "media_removed": self.media_removed,
        }


@dataclass
class RunContext:
    run_id: str
    feed_path: str
    started_at: str = field(default_factory=utc_timestamp_iso)
    started_monotonic: float = 0.0
    state: RunState = RunState.IDLE
    is_first_run: bool = False
    stats: RunStats = field(default_factory=RunStats)
    seen_ids: set[int] = field(default_factory=set)
    errors: list[dict[str, Any]] = field(default_factory=list)
    peak_memory_mb: float = 0.0
    duration_seconds: float = 0.0
    ended_at: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    snapshot_path: str | None = None
    budget_warned: bool = False

    def record_error(self, exc: Exception, *, external_id: int | None = None, stage: str = "stream") -> None:
        if len(self.errors) >= MAX_RECORDED_ERRORS:
            return
        self.errors.append(
            {
                "external_id": external_id,
                "stage": stage,
                "error_code": getattr(exc, "error_code", "UNEXPECTED_ERROR"),
                "message": str(exc),
            }
        )

    def fail(self, exc: Exception) -> None:
        self.state = RunState.FAILED
        self.error_code = getattr(exc, "error_code", "UNEXPECTED_ERROR")
        self.error_message = str(exc)

    @property
    def status(self) -> str:
        if self.state is RunState.FAILED:
            return "failed"
        if self.stats.errors or self.stats.parse_errors:
            return "partial"
        return "success"

    def to_result(self, config_snapshot: dict[str, Any], agencies: dict[str, int]) -> dict[str, Any]:
        chunks = self.stats.chunks_processed
        processed = self.stats.total_in_feed
        duration = self.duration_seconds
        return {
            "run_id": self.run_id,
            "status": self.status,
            "state": self.state.value,
            "is_first_run": self.is_first_run,
            "feed_path": self.feed_path,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(duration, 3),
            "duration_formatted": format_duration(duration),
            "counts": self.stats.counts(),
            "throughput": {
                "records_per_second": round(processed / duration, 2) if duration > 0 else 0.0,
                "chunks_per_minute": round(chunks / (duration / 60), 2) if duration > 0 else 0.0,
                "average_chunk_size": round(processed / chunks, 2) if chunks else 0.0,
            },
            "chunks_processed": chunks,
            "peak_memory_mb": round(self.peak_memory_mb, 2),
            "regions_found": dict(sorted(self.stats.regions_found.items())),
            "categories_found": dict(sorted(self.stats.categories_found.items())),
            "agencies": agencies,
            "errors": self.errors,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "snapshot_path": self.snapshot_path,
            "config": config_snapshot,
        }


class ImportEngine:
    def __init__(
        self,
        *,
        settings: ImportSettings,
        tracker: ChangeTracker,
        mapper: RecordMapper,
        resolver: AgencyResolver,
        store: ContentStore,
        reader: FeedReader,
        run_state: RunStateStore,
        logger: logging.Logger,
        backup_dir: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.tracker = tracker
        self.mapper = mapper
        self.resolver = resolver
        self.store = store
        self.reader = reader
        self.run_state = run_state
        self.logger = logger
        self.backup_dir = backup_dir
        self.sleep = sleep
        self.clock = clock

    def _transition(self, ctx: RunContext, state: RunState) -> None:
        previous = ctx.state
        ctx.state = state
        log_event(
            self.logger,
            f"run state {previous.value} -> {state.value}",
            run_id=ctx.run_id,
            stage=state.value,
            event="STATE_CHANGE",
            status="ok",
        )

    def _elapsed(self, ctx: RunContext) -> float:
        return self.clock() - ctx.started_monotonic

    def included(self, record: SourceRecord) -> bool:
        allowed_regions = self.settings.allowed_regions
        if allowed_regions and self.mapper.region_prefix(record) not in allowed_regions:
            return False
        allowed_categories = self.settings.allowed_categories
        if allowed_categories and record.category_id not in allowed_categories:
            return False
        return True

    def _initialize(self, ctx: RunContext) -> None:
        self.tracker.ensure_schema()
        ctx.is_first_run = self.tracker.is_empty()
        if self.settings.backup_before_import and not ctx.is_first_run and self.backup_dir is not None:
            snapshot = self.tracker.snapshot(self.backup_dir, ctx.run_id)
            ctx.snapshot_path = str(snapshot) if snapshot is not None else None
        log_event(
            self.logger,
            f"{'first' if ctx.is_first_run else 'incremental'} import of {ctx.feed_path}",
            run_id=ctx.run_id,
            stage="initialize",
            event="RUN_START",
            status="ok",
        )

    def _handle_record(self, ctx: RunContext, record: SourceRecord) -> None:
        ctx.stats.total_in_feed += 1
        if not self.included(record):
            ctx.stats.filtered_out += 1
            return

        ctx.stats.regions_found[self.mapper.region_prefix(record) or "unknown"] += 1
        ctx.stats.categories_found[self.mapper.category_name(record) or "unknown"] += 1
        if record.deleted:
            ctx.stats.deleted_in_feed += 1
            return

        ctx.seen_ids.add(record.external_id)
        try:
            self._sync_record(ctx, record)
        except Exception as exc:
            self._record_failed(ctx, record, exc)

    def _sync_record(self, ctx: RunContext, record: SourceRecord) -> None:
        new_hash = self.tracker.fingerprint(record)
        decision = self.tracker.decide(record.external_id, new_hash)
        if decision.action is ChangeAction.SKIP:
            ctx.stats.skipped += 1
            return

        try:
            mapped = self.mapper.map(record)
        except (KeyError, TypeError, ValueError) as exc:
            raise MappingError(f"Could not map record {record.external_id}: {exc}") from exc
        agency_target_id = None
        if mapped.agency is not None:
            agency_target_id = self.resolver.upsert(mapped.agency)

        target_id = decision.target_id
        if target_id is None:
            target_id = self.store.find_by_external_id(record.external_id)

        outcome = persist_entity(
            self.store,
            mapped,
            target_id=target_id,
            agency_target_id=agency_target_id,
            media_workers=self.settings.media_workers,
        )
        target_id = outcome.target_id
        ctx.stats.media_attached += outcome.media.attached
        ctx.stats.media_reused += outcome.media.reused
        ctx.stats.media_removed += outcome.media.removed
        self.tracker.commit(
            record.external_id,
            mapped.content_hash,
            target_id,
            DenormalizedFields(
                region=mapped.core.region_code or None,
                category=record.category_id,
                price=mapped.core.price,
                agency_id=mapped.agency.external_id if mapped.agency is not None else None,
            ),
        )
        if decision.action is ChangeAction.INSERT and outcome.created:
            ctx.stats.inserted += 1
        else:
            ctx.stats.updated += 1
        log_event(
            self.logger,
            f"{decision.action.value} {record.external_id} -> {target_id}",
            level="debug",
            run_id=ctx.run_id,
            stage="stream",
            event=f"RECORD_{decision.action.value.upper()}",
            status="ok",
            external_id=record.external_id,
        )

    def _record_failed(self, ctx: RunContext, record: SourceRecord, exc: Exception) -> None:
        ctx.stats.errors += 1
        ctx.record_error(exc, external_id=record.external_id)
        log_event(
            self.logger,
            f"record {record.external_id} failed: {exc}",
            level="error",
            run_id=ctx.run_id,
            stage="stream",
            event="RECORD_FAIL",
            status="error",
            external_id=record.external_id,
            error_code=getattr(exc, "error_code", "UNEXPECTED_ERROR"),
        )
        try:
            self.tracker.mark_error(record.external_id)
        except TrackingError as mark_exc:
            log_event(
                self.logger,
                str(mark_exc),
                level="warning",
                run_id=ctx.run_id,
                stage="stream",
                event="TRACKING_MARK_FAIL",
                status="warning",
                external_id=record.external_id,
                error_code=mark_exc.error_code,
            )

    def _check_time_budget(self, ctx: RunContext) -> None:
        budget = self.settings.max_execution_time
        if not budget or ctx.budget_warned or self._elapsed(ctx) <= budget:
            return
        ctx.budget_warned = True
        log_event(
            self.logger,
            f"run exceeded execution budget of {budget}s",
            level="warning",
            run_id=ctx.run_id,
            stage=ctx.state.value,
            event="TIME_BUDGET_EXCEEDED",
            status="warning",
        )

    def _on_chunk(self, ctx: RunContext, chunk: ChunkInfo) -> None:
        ctx.stats.chunks_processed = chunk.chunk_index
        ctx.peak_memory_mb = max(ctx.peak_memory_mb, chunk.memory_mb)
        self.run_state.write_progress(
            ProgressSnapshot(
                run_id=ctx.run_id,
                chunk_index=chunk.chunk_index,
                processed_count=ctx.stats.total_in_feed,
                inserted=ctx.stats.inserted,
                updated=ctx.stats.updated,
                skipped=ctx.stats.skipped,
                errors=ctx.stats.errors + self.reader.error_count,
                memory_mb=chunk.memory_mb,
                elapsed_seconds=round(self._elapsed(ctx), 3),
                chunk_size=chunk.next_chunk_size,
            )
        )
        self._check_time_budget(ctx)
        if self.settings.sleep_seconds > 0:
            self.sleep(self.settings.sleep_seconds)
        if self.run_state.stop_requested(ctx.run_id):
            raise StopRequestedError(f"Stop requested after chunk {chunk.chunk_index}")

    def _on_progress(self, ctx: RunContext, tick: ProgressTick) -> None:
        log_event(
            self.logger,
            f"chunk {tick.chunk_index}: {tick.total_processed} records, {tick.records_per_second}/s, {tick.memory_mb}MB",
            run_id=ctx.run_id,
            stage="stream",
            event="PROGRESS",
            status="ok",
            chunk=tick.chunk_index,
            rows_in=tick.total_processed,
            duration_ms=int(tick.chunk_duration_seconds * 1000),
        )

    def _propagate_deletions(self, ctx: RunContext) -> None:
        policy = self.settings.delete_policy
        if policy == "none":
            return
        for tracked in self.tracker.pending_target_deletions():
            try:
                if policy == "hard":
                    self.store.delete_entity(tracked.target_id)
                else:
                    self.store.soft_delete_entity(tracked.target_id)
                self.tracker.mark_target_deleted(tracked.external_id)
                ctx.stats.target_deletions += 1
            except Exception as exc:
                ctx.stats.errors += 1
                ctx.record_error(exc, external_id=tracked.external_id, stage="reconcile")
                log_event(
                    self.logger,
                    f"could not delete target {tracked.target_id}: {exc}",
                    level="error",
                    run_id=ctx.run_id,
                    stage="reconcile",
                    event="TARGET_DELETE_FAIL",
                    status="error",
                    external_id=tracked.external_id,
                    error_code=getattr(exc, "error_code", "UNEXPECTED_ERROR"),
                )

    def _reconcile(self, ctx: RunContext) -> None:
        if not ctx.seen_ids:
            log_event(
                self.logger,
                "no records seen, reconciliation skipped",
                level="warning",
                run_id=ctx.run_id,
                stage="reconcile",
                event="RECONCILE_SKIPPED",
                status="warning",
            )
        else:
            ctx.stats.reconciled_deleted = self.tracker.reconcile(ctx.seen_ids)
        self._propagate_deletions(ctx)
        if self.settings.retention_days > 0:
            ctx.stats.purged = self.tracker.purge(self.settings.retention_days)

    def _finalize(self, ctx: RunContext) -> dict[str, Any]:
        ctx.duration_seconds = self._elapsed(ctx)
        ctx.ended_at = utc_timestamp_iso()
        ctx.stats.parse_errors = self.reader.error_count
        ctx.stats.skipped_without_id = self.reader.skipped_without_id
        ctx.peak_memory_mb = max(ctx.peak_memory_mb, self.reader.peak_memory_mb)
        result = ctx.to_result(self.settings.snapshot(), self.resolver.stats.to_dict())
        self.run_state.write_result(ctx.run_id, result)
        self.run_state.clear_progress()
        self.run_state.clear_stop()
        log_event(
            self.logger,
            f"run {ctx.status}: {ctx.stats.counts()}",
            level="error" if ctx.state is RunState.FAILED else "info",
            run_id=ctx.run_id,
            stage=ctx.state.value,
            event="RUN_END",
            status=ctx.status,
            rows_in=ctx.stats.total_in_feed,
            rows_out=ctx.stats.inserted + ctx.stats.updated,
            duration_ms=int(ctx.duration_seconds * 1000),
            error_code=ctx.error_code,
        )
        return result

    def run(self, feed_path: Path, run_id: str) -> RunContext:
        ctx = RunContext(run_id=run_id, feed_path=str(feed_path), started_monotonic=self.clock())
        self._transition(ctx, RunState.INITIALIZING)
        try:
            self.run_state.acquire_lock(run_id)
        except RunInProgressError as exc:
            ctx.fail(exc)
            log_event(
                self.logger,
                str(exc),
                level="error",
                run_id=run_id,
                stage="initialize",
                event="RUN_REJECTED",
                status="error",
                error_code=exc.error_code,
            )
            return ctx

        self.reader.reset()
        try:
            self._initialize(ctx)
            self._transition(ctx, RunState.STREAMING)
            self.reader.parse(
                Path(feed_path),
                on_record=lambda record: self._handle_record(ctx, record),
                on_chunk=lambda chunk: self._on_chunk(ctx, chunk),
                on_progress=lambda tick: self._on_progress(ctx, tick),
            )
            self._transition(ctx, RunState.RECONCILING)
            self._reconcile(ctx)
            self._transition(ctx, RunState.COMPLETED)
        except PipelineError as exc:
            ctx.fail(exc)
        except Exception as exc:
            ctx.record_error(exc, stage=ctx.state.value)
            ctx.fail(exc)
        finally:
            try:
                self._finalize(ctx)
            finally:
                self.run_state.release_lock(run_id)
        return ctx
