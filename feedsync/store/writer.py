"""Writes a mapped entity bundle through a content store."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

from feedsync.common.models import GalleryItem, MappedEntity
from feedsync.store.base import ContentStore

AGENCY_RELATION = "agency"
FEATURES_TAXONOMY = "property_features"


@dataclass(frozen=True)
class MediaSync:
    attached: int = 0
    reused: int = 0
    removed: int = 0


@dataclass(frozen=True)
class PersistOutcome:
    target_id: int
    created: bool
    media: MediaSync


def attach_gallery(store: ContentStore, entity_id: int, gallery: Sequence[GalleryItem], workers: int = 1) -> list[int]:
    if workers <= 1 or len(gallery) <= 1:
        return [store.attach_media(entity_id, item.url, item.role, position=item.position) for item in gallery]
    with ThreadPoolExecutor(max_workers=min(workers, len(gallery))) as pool:
        futures = [
            pool.submit(store.attach_media, entity_id, item.url, item.role, position=item.position)
            for item in gallery
        ]
        return [future.result() for future in futures]


def sync_media(store: ContentStore, entity_id: int, gallery: Sequence[GalleryItem], workers: int = 1) -> MediaSync:
    """Reuse media already attached under the same source URL; attach the rest and detach what is gone."""
    existing: dict[str, list[dict]] = {}
    for row in store.get_media(entity_id):
        existing.setdefault(row["url"], []).append(row)

    missing: list[GalleryItem] = []
    reused = 0
    for item in gallery:
        matches = existing.get(item.url)
        if not matches:
            missing.append(item)
            continue
        row = matches.pop(0)
        if (row["role"], row["position"]) != (item.role, item.position):
            store.update_media(row["media_id"], item.role, position=item.position)
        reused += 1

    stale = [row["media_id"] for rows in existing.values() for row in rows]
    removed = store.detach_media(entity_id, stale) if stale else 0
    attached = attach_gallery(store, entity_id, missing, workers)
    return MediaSync(attached=len(attached), reused=reused, removed=removed)


def persist_entity(
    store: ContentStore,
    mapped: MappedEntity,
    *,
    target_id: int | None = None,
    agency_target_id: int | None = None,
    media_workers: int = 1,
) -> PersistOutcome:
    """Create or update the entity and its features, gallery, taxonomies and agency relation.

    A target that no longer exists is looked up by external id and recreated when absent.
    """
    fields = mapped.entity_fields()
    if target_id is not None and not store.update_entity(target_id, fields):
        target_id = store.find_by_external_id(mapped.external_id)
        if target_id is not None and not store.update_entity(target_id, fields):
            target_id = None

    created = target_id is None
    if created:
        target_id = store.create_entity(fields)

    for taxonomy, values in sorted(mapped.taxonomies.items()):
        store.set_taxonomy(target_id, taxonomy, list(values))
    store.set_taxonomy(target_id, FEATURES_TAXONOMY, list(mapped.features))
    media = sync_media(store, target_id, mapped.gallery, media_workers)
    store.set_relation(target_id, AGENCY_RELATION, agency_target_id)
    return PersistOutcome(target_id=target_id, created=created, media=media)
