"""Relational content store backed by SQLAlchemy (SQLite by default)."""

from __future__ import annotations

import threading
from typing import Any, Sequence

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from feedsync.common.db import create_sql_engine
from feedsync.common.errors import PersistenceError
from feedsync.common.time_utils import utc_now
from feedsync.store.base import ContentStore

metadata = MetaData()

entities = Table(
    "content_entities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(32), nullable=False),
    Column("external_id", BigInteger, nullable=True),
    Column("status", String(16), nullable=False),
    Column("fields", JSON, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("kind", "external_id", name="uq_content_entities_kind_external_id"),
)

media = Table(
    "content_media",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity_id", Integer, ForeignKey("content_entities.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("url", Text, nullable=False),
    Column("role", String(32), nullable=False),
    Column("position", Integer, nullable=False),
)

terms = Table(
    "content_terms",
    metadata,
    Column("entity_id", Integer, ForeignKey("content_entities.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("taxonomy", String(64), nullable=False),
    Column("value", String(255), nullable=False),
    Column("position", Integer, nullable=False),
)

relations = Table(
    "content_relations",
    metadata,
    Column("entity_id", Integer, ForeignKey("content_entities.id", ondelete="CASCADE"), nullable=False),
    Column("relation_key", String(64), nullable=False),
    Column("target_id", Integer, nullable=False),
    UniqueConstraint("entity_id", "relation_key", name="uq_content_relations_entity_key"),
)


def _now():
    return utc_now().replace(tzinfo=None)


class SqlContentStore(ContentStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._lock = threading.Lock()
        metadata.create_all(self.engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlContentStore":
        return cls(create_sql_engine(url))

    def close(self) -> None:
        self.engine.dispose()

    def _write(self, *statements):
        try:
            with self._lock, self.engine.begin() as conn:
                return [conn.execute(stmt) for stmt in statements]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Content store write failed: {exc}") from exc

    def create_entity(self, fields: dict[str, Any], *, kind: str = "property") -> int:
        now = _now()
        (result,) = self._write(
            insert(entities).values(
                kind=kind,
                external_id=fields.get("external_id"),
                status="publish",
                fields=fields,
                created_at=now,
                updated_at=now,
            )
        )
        return int(result.inserted_primary_key[0])

    def update_entity(self, entity_id: int, fields: dict[str, Any]) -> bool:
        (result,) = self._write(
            update(entities)
            .where(entities.c.id == entity_id)
            .values(fields=fields, status="publish", updated_at=_now())
        )
        return result.rowcount > 0

    def attach_media(self, entity_id: int, url: str, role: str, *, position: int = 0) -> int:
        (result,) = self._write(
            insert(media).values(entity_id=entity_id, url=url, role=role, position=position)
        )
        return int(result.inserted_primary_key[0])

    def update_media(self, media_id: int, role: str, *, position: int = 0) -> bool:
        (result,) = self._write(update(media).where(media.c.id == media_id).values(role=role, position=position))
        return result.rowcount > 0

    def detach_media(self, entity_id: int, media_ids: Sequence[int]) -> int:
        if not media_ids:
            return 0
        (result,) = self._write(
            delete(media).where(media.c.entity_id == entity_id).where(media.c.id.in_(list(media_ids)))
        )
        return result.rowcount or 0

    def set_taxonomy(self, entity_id: int, taxonomy: str, values: Sequence[str]) -> None:
        statements = [delete(terms).where(terms.c.entity_id == entity_id).where(terms.c.taxonomy == taxonomy)]
        if values:
            statements.append(
                insert(terms).values(
                    [
                        {"entity_id": entity_id, "taxonomy": taxonomy, "value": value, "position": position}
                        for position, value in enumerate(values)
                    ]
                )
            )
        self._write(*statements)

    def set_relation(self, entity_id: int, relation_key: str, target_id: int | None) -> None:
        statements = [
            delete(relations)
            .where(relations.c.entity_id == entity_id)
            .where(relations.c.relation_key == relation_key)
        ]
        if target_id is not None:
            statements.append(
                insert(relations).values(entity_id=entity_id, relation_key=relation_key, target_id=target_id)
            )
        self._write(*statements)

    def find_by_external_id(self, external_id: int, *, kind: str = "property") -> int | None:
        stmt = select(entities.c.id).where(entities.c.kind == kind).where(entities.c.external_id == external_id)
        with self.engine.connect() as conn:
            found = conn.execute(stmt).scalar_one_or_none()
        return int(found) if found is not None else None

    def get_fields(self, entity_id: int) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            found = conn.execute(select(entities.c.fields).where(entities.c.id == entity_id)).scalar_one_or_none()
        return dict(found) if found is not None else None

    def get_status(self, entity_id: int) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(select(entities.c.status).where(entities.c.id == entity_id)).scalar_one_or_none()

    def get_media(self, entity_id: int) -> list[dict[str, Any]]:
        stmt = (
            select(media.c.id.label("media_id"), media.c.url, media.c.role, media.c.position)
            .where(media.c.entity_id == entity_id)
            .order_by(media.c.id)
        )
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]

    def get_taxonomy(self, entity_id: int, taxonomy: str) -> list[str]:
        stmt = (
            select(terms.c.value)
            .where(terms.c.entity_id == entity_id)
            .where(terms.c.taxonomy == taxonomy)
            .order_by(terms.c.position)
        )
        with self.engine.connect() as conn:
            return list(conn.execute(stmt).scalars())

    def get_relation(self, entity_id: int, relation_key: str) -> int | None:
        stmt = (
            select(relations.c.target_id)
            .where(relations.c.entity_id == entity_id)
            .where(relations.c.relation_key == relation_key)
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one_or_none()

    def soft_delete_entity(self, entity_id: int) -> bool:
        (result,) = self._write(
            update(entities).where(entities.c.id == entity_id).values(status="trash", updated_at=_now())
        )
        return result.rowcount > 0

    def delete_entity(self, entity_id: int) -> bool:
        results = self._write(
            delete(media).where(media.c.entity_id == entity_id),
            delete(terms).where(terms.c.entity_id == entity_id),
            delete(relations).where(relations.c.entity_id == entity_id),
            delete(entities).where(entities.c.id == entity_id),
        )
        return results[-1].rowcount > 0
