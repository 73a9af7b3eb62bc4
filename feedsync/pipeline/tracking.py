"""Tracking table: external id -> content hash -> target id, plus reconciliation."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from feedsync.common.constants import LIVE_STATUSES, TRACKING_STATUSES
from feedsync.common.db import create_sql_engine
from feedsync.common.errors import TrackingError
from feedsync.common.fs import ensure_dir
from feedsync.common.logging import log_event
from feedsync.common.models import ChangeAction, ChangeDecision, DenormalizedFields, SourceRecord, TrackingRecord
from feedsync.common.time_utils import days_ago, to_iso, utc_now
from feedsync.pipeline.fingerprint import fingerprint as compute_fingerprint

BATCH_SIZE = 500

metadata = MetaData()

property_tracking = Table(
    "property_tracking",
    metadata,
    Column("external_id", BigInteger, primary_key=True, autoincrement=False),
    Column("target_id", BigInteger, nullable=True),
    Column("content_hash", String(32), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("last_seen", DateTime, nullable=True),
    Column("region", String(16), nullable=True, index=True),
    Column("category", Integer, nullable=True),
    Column("price", Float, nullable=True),
    Column("agency_id", BigInteger, nullable=True, index=True),
    Column("target_deleted", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

agency_tracking = Table(
    "agency_tracking",
    metadata,
    Column("agency_id", BigInteger, primary_key=True, autoincrement=False),
    Column("target_id", BigInteger, nullable=False),
    Column("contact_hash", String(32), nullable=False),
    Column("last_seen", DateTime, nullable=False),
)


def _naive_utc(clock: Callable[[], datetime]) -> datetime:
    return clock().replace(tzinfo=None)


def _batched(values: Sequence[int], size: int) -> Iterator[list[int]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def _to_record(row: Row) -> TrackingRecord:
    return TrackingRecord(
        external_id=int(row.external_id),
        content_hash=row.content_hash,
        target_id=int(row.target_id) if row.target_id is not None else None,
        status=row.status,
        last_seen=row.last_seen,
        region=row.region,
        category=row.category,
        price=row.price,
        agency_id=int(row.agency_id) if row.agency_id is not None else None,
        target_deleted=bool(row.target_deleted),
    )


class ChangeTracker:
    def __init__(
        self,
        engine: Engine,
        logger: logging.Logger,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.logger = logger
        self.clock = clock

    @classmethod
    def from_url(cls, url: str, logger: logging.Logger) -> "ChangeTracker":
        return cls(create_sql_engine(url), logger)

    def ensure_schema(self) -> None:
        metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def is_empty(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(property_tracking)).scalar_one()
        return count == 0

    def get(self, external_id: int) -> TrackingRecord | None:
        with self.engine.connect() as conn:
            row = self._fetch(conn, external_id)
        return _to_record(row) if row is not None else None

    def _fetch(self, conn: Connection, external_id: int) -> Row | None:
        stmt = select(property_tracking).where(property_tracking.c.external_id == external_id)
        return conn.execute(stmt).first()

    def fingerprint(self, record: SourceRecord) -> str:
        return compute_fingerprint(record)

    def decide(self, external_id: int, new_hash: str) -> ChangeDecision:
        existing = self.get(external_id)
        if existing is None:
            return ChangeDecision(ChangeAction.INSERT, reason="untracked")
        if existing.status != "active":
            # a target removed by the delete policy is looked up again by the caller
            target_id = None if existing.target_deleted else existing.target_id
            return ChangeDecision(ChangeAction.UPDATE, target_id, reason=f"restore_{existing.status}")
        if existing.content_hash != new_hash:
            return ChangeDecision(ChangeAction.UPDATE, existing.target_id, reason="hash_changed")
        return ChangeDecision(ChangeAction.SKIP, existing.target_id, reason="unchanged")

    def commit(
        self,
        external_id: int,
        new_hash: str,
        target_id: int | None,
        denormalized: DenormalizedFields | None = None,
        status: str = "active",
    ) -> None:
        if status not in TRACKING_STATUSES:
            raise TrackingError(f"Unknown tracking status: {status}")
        denormalized = denormalized or DenormalizedFields()
        now = _naive_utc(self.clock)
        values = {
            "content_hash": new_hash,
            "target_id": target_id,
            "status": status,
            "last_seen": now,
            "region": denormalized.region,
            "category": denormalized.category,
            "price": denormalized.price,
            "agency_id": denormalized.agency_id,
            "target_deleted": False,
            "updated_at": now,
        }
        try:
            with self.engine.begin() as conn:
                if self._fetch(conn, external_id) is None:
                    conn.execute(
                        insert(property_tracking).values(external_id=external_id, created_at=now, **values)
                    )
                else:
                    conn.execute(
                        update(property_tracking)
                        .where(property_tracking.c.external_id == external_id)
                        .values(**values)
                    )
        except SQLAlchemyError as exc:
            log_event(
                self.logger,
                f"tracking commit failed: {exc}",
                level="error",
                stage="tracking",
                event="TRACKING_COMMIT_FAIL",
                status="error",
                external_id=external_id,
                error_code=TrackingError.error_code,
            )
            raise TrackingError(f"Tracking commit failed for {external_id}") from exc

    def mark_error(self, external_id: int) -> bool:
        """Flag a tracked record whose update failed; the stored hash is kept so it is retried."""
        now = _naive_utc(self.clock)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(property_tracking)
                    .where(property_tracking.c.external_id == external_id)
                    .values(status="error", updated_at=now)
                )
        except SQLAlchemyError as exc:
            raise TrackingError(f"Could not flag {external_id} as error") from exc
        return result.rowcount > 0

    def reconcile(self, seen_ids: Iterable[int]) -> int:
        seen = set(seen_ids)
        now = _naive_utc(self.clock)
        with self.engine.begin() as conn:
            live_ids = conn.execute(
                select(property_tracking.c.external_id).where(property_tracking.c.status.in_(LIVE_STATUSES))
            ).scalars().all()
            missing = sorted(int(external_id) for external_id in live_ids if external_id not in seen)
            for batch in _batched(missing, BATCH_SIZE):
                conn.execute(
                    update(property_tracking)
                    .where(property_tracking.c.external_id.in_(batch))
                    .values(status="deleted", updated_at=now)
                )
            for batch in _batched(sorted(seen), BATCH_SIZE):
                conn.execute(
                    update(property_tracking)
                    .where(property_tracking.c.external_id.in_(batch))
                    .values(last_seen=now)
                )
        log_event(
            self.logger,
            f"reconciliation marked {len(missing)} records deleted",
            stage="reconcile",
            event="RECONCILE",
            status="ok",
            rows_in=len(seen),
            rows_out=len(missing),
        )
        return len(missing)

    def pending_target_deletions(self) -> list[TrackingRecord]:
        stmt = (
            select(property_tracking)
            .where(property_tracking.c.status == "deleted")
            .where(property_tracking.c.target_id.is_not(None))
            .where(property_tracking.c.target_deleted.is_(False))
            .order_by(property_tracking.c.external_id)
        )
        with self.engine.connect() as conn:
            return [_to_record(row) for row in conn.execute(stmt)]

    def mark_target_deleted(self, external_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(property_tracking)
                .where(property_tracking.c.external_id == external_id)
                .values(target_deleted=True, updated_at=_naive_utc(self.clock))
            )

    def purge(self, older_than_days: int) -> int:
        cutoff = days_ago(older_than_days, now=self.clock()).replace(tzinfo=None)
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(property_tracking)
                .where(property_tracking.c.status == "deleted")
                .where(property_tracking.c.updated_at < cutoff)
            )
        purged = result.rowcount or 0
        log_event(
            self.logger,
            f"purged {purged} tracking records older than {older_than_days} days",
            stage="purge",
            event="TRACKING_PURGE",
            status="ok",
            rows_out=purged,
        )
        return purged

    def statistics(self) -> dict:
        week_ago = days_ago(7, now=self.clock()).replace(tzinfo=None)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(property_tracking)).scalar_one()
            by_status = {
                status: count
                for status, count in conn.execute(
                    select(property_tracking.c.status, func.count()).group_by(property_tracking.c.status)
                )
            }
            recent = conn.execute(
                select(func.count())
                .select_from(property_tracking)
                .where(property_tracking.c.last_seen >= week_ago)
            ).scalar_one()
            last_seen = conn.execute(select(func.max(property_tracking.c.last_seen))).scalar_one()
            agencies = conn.execute(select(func.count()).select_from(agency_tracking)).scalar_one()
        return {
            "total_tracked": total,
            "by_status": by_status,
            "seen_last_7_days": recent,
            "last_seen": to_iso(last_seen),
            "agencies_tracked": agencies,
        }

    def linked_agency_ids(self) -> set[int]:
        stmt = (
            select(property_tracking.c.agency_id)
            .where(property_tracking.c.status == "active")
            .where(property_tracking.c.agency_id.is_not(None))
            .distinct()
        )
        with self.engine.connect() as conn:
            return {int(agency_id) for agency_id in conn.execute(stmt).scalars()}

    def get_agency(self, agency_id: int) -> tuple[int, str] | None:
        stmt = select(agency_tracking.c.target_id, agency_tracking.c.contact_hash).where(
            agency_tracking.c.agency_id == agency_id
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        if row is None:
            return None
        return int(row.target_id), row.contact_hash

    def commit_agency(self, agency_id: int, target_id: int, contact_hash: str) -> None:
        now = _naive_utc(self.clock)
        values = {"target_id": target_id, "contact_hash": contact_hash, "last_seen": now}
        try:
            with self.engine.begin() as conn:
                exists = conn.execute(
                    select(agency_tracking.c.agency_id).where(agency_tracking.c.agency_id == agency_id)
                ).first()
                if exists is None:
                    conn.execute(insert(agency_tracking).values(agency_id=agency_id, **values))
                else:
                    conn.execute(
                        update(agency_tracking).where(agency_tracking.c.agency_id == agency_id).values(**values)
                    )
        except SQLAlchemyError as exc:
            raise TrackingError(f"Agency tracking commit failed for {agency_id}") from exc

    def tracked_agencies(self) -> dict[int, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(agency_tracking.c.agency_id, agency_tracking.c.target_id))
            return {int(row.agency_id): int(row.target_id) for row in rows}

    def forget_agency(self, agency_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(agency_tracking).where(agency_tracking.c.agency_id == agency_id))

    def snapshot(self, target_dir: Path, run_id: str) -> Path | None:
        database = self.engine.url.database
        if self.engine.url.get_backend_name() != "sqlite" or not database or database == ":memory:":
            return None
        source = Path(database)
        if not source.exists():
            return None
        ensure_dir(target_dir)
        target = target_dir / f"tracking_{run_id}.sqlite"
        shutil.copy2(source, target)
        log_event(self.logger, f"tracking snapshot written to {target}", stage="initialize", event="SNAPSHOT")
        return target
