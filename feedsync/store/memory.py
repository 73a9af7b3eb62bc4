"""In-memory content store used for dry runs and tests."""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Any, Sequence

from feedsync.store.base import ContentStore


@dataclass
class StoredEntity:
    entity_id: int
    kind: str
    fields: dict[str, Any]
    status: str = "publish"
    media: list[dict[str, Any]] = field(default_factory=list)
    taxonomies: dict[str, list[str]] = field(default_factory=dict)
    relations: dict[str, int] = field(default_factory=dict)


class InMemoryContentStore(ContentStore):
    def __init__(self) -> None:
        self.entities: dict[int, StoredEntity] = {}
        self.writes = 0
        self._next_entity_id = 1
        self._next_media_id = 1
        self._lock = threading.Lock()

    def create_entity(self, fields: dict[str, Any], *, kind: str = "property") -> int:
        with self._lock:
            entity_id = self._next_entity_id
            self._next_entity_id += 1
            self.entities[entity_id] = StoredEntity(entity_id, kind, copy.deepcopy(fields))
            self.writes += 1
            return entity_id

    def update_entity(self, entity_id: int, fields: dict[str, Any]) -> bool:
        with self._lock:
            entity = self.entities.get(entity_id)
            if entity is None:
                return False
            entity.fields = copy.deepcopy(fields)
            entity.status = "publish"
            self.writes += 1
            return True

    def attach_media(self, entity_id: int, url: str, role: str, *, position: int = 0) -> int:
        with self._lock:
            entity = self.entities[entity_id]
            media_id = self._next_media_id
            self._next_media_id += 1
            entity.media.append({"media_id": media_id, "url": url, "role": role, "position": position})
            self.writes += 1
            return media_id

    def get_media(self, entity_id: int) -> list[dict[str, Any]]:
        with self._lock:
            entity = self.entities.get(entity_id)
            return copy.deepcopy(entity.media) if entity is not None else []

    def update_media(self, media_id: int, role: str, *, position: int = 0) -> bool:
        with self._lock:
            for entity in self.entities.values():
                for item in entity.media:
                    if item["media_id"] == media_id:
                        item.update(role=role, position=position)
                        self.writes += 1
                        return True
        return False

    def detach_media(self, entity_id: int, media_ids: Sequence[int]) -> int:
        with self._lock:
            entity = self.entities.get(entity_id)
            if entity is None or not media_ids:
                return 0
            dropped = set(media_ids)
            kept = [item for item in entity.media if item["media_id"] not in dropped]
            removed = len(entity.media) - len(kept)
            if removed:
                entity.media = kept
                self.writes += 1
            return removed

    def set_taxonomy(self, entity_id: int, taxonomy: str, values: Sequence[str]) -> None:
        with self._lock:
            self.entities[entity_id].taxonomies[taxonomy] = list(values)
            self.writes += 1

    def set_relation(self, entity_id: int, relation_key: str, target_id: int | None) -> None:
        with self._lock:
            relations = self.entities[entity_id].relations
            if target_id is None:
                relations.pop(relation_key, None)
            else:
                relations[relation_key] = target_id
            self.writes += 1

    def find_by_external_id(self, external_id: int, *, kind: str = "property") -> int | None:
        with self._lock:
            for entity in self.entities.values():
                if entity.kind == kind and entity.fields.get("external_id") == external_id:
                    return entity.entity_id
        return None

    def get_fields(self, entity_id: int) -> dict[str, Any] | None:
        entity = self.entities.get(entity_id)
        return copy.deepcopy(entity.fields) if entity is not None else None

    def soft_delete_entity(self, entity_id: int) -> bool:
        with self._lock:
            entity = self.entities.get(entity_id)
            if entity is None:
                return False
            entity.status = "trash"
            self.writes += 1
            return True

    def delete_entity(self, entity_id: int) -> bool:
        with self._lock:
            if self.entities.pop(entity_id, None) is None:
                return False
            self.writes += 1
            return True

    def count(self, kind: str = "property") -> int:
        return sum(1 for entity in self.entities.values() if entity.kind == kind)
