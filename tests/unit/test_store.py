from pathlib import Path

import pytest

from feedsync.common.errors import PersistenceError
from feedsync.common.models import CadastralData, CoreFields, GalleryItem, MappedEntity, SourceRecord
from feedsync.store.memory import InMemoryContentStore
from feedsync.store.sql import SqlContentStore
from feedsync.store.writer import AGENCY_RELATION, FEATURES_TAXONOMY, MediaSync, persist_entity


@pytest.fixture
def sql_store(tmp_path: Path) -> SqlContentStore:
    store = SqlContentStore.from_url(f"sqlite:///{tmp_path / 'content.sqlite'}")
    yield store
    store.close()


def _mapped(external_id: int = 100, *, title: str = "Immobile a Trento", gallery=()) -> MappedEntity:
    core = CoreFields(
        title=title,
        description="",
        excerpt="",
        slug=f"immobile-a-trento-{external_id}",
        reference=f"RS-{external_id}",
        price=200000.0,
        size=None,
        bedrooms=3,
        bathrooms=None,
        rooms=None,
        address="",
        full_address="",
        city="",
        zip_code="",
        province="",
        province_name="",
        region_code="022",
        region_name="Trento",
        latitude=None,
        longitude=None,
        energy_class="NC",
        contract="sale",
    )
    return MappedEntity(
        external_id=external_id,
        core=core,
        taxonomies={"property_category": (), "property_county_state": ("Trento",)},
        features=("giardino",),
        gallery=tuple(gallery),
        cadastral=CadastralData(),
        agency=None,
        extensions={"heating": "Centralizzato"},
        content_hash="a" * 32,
        source=SourceRecord(external_id=external_id),
    )


def test_sql_store_entity_lifecycle(sql_store: SqlContentStore):
    entity_id = sql_store.create_entity({"external_id": 5, "title": "Casa", "nested": {"a": [1, 2]}})

    assert sql_store.find_by_external_id(5) == entity_id
    assert sql_store.find_by_external_id(5, kind="agency") is None
    assert sql_store.get_fields(entity_id) == {"external_id": 5, "title": "Casa", "nested": {"a": [1, 2]}}

    assert sql_store.update_entity(entity_id, {"external_id": 5, "title": "Casa nuova"})
    assert sql_store.get_fields(entity_id)["title"] == "Casa nuova"
    assert not sql_store.update_entity(9999, {"title": "x"})

    assert sql_store.soft_delete_entity(entity_id)
    assert sql_store.get_status(entity_id) == "trash"
    assert sql_store.update_entity(entity_id, {"external_id": 5, "title": "restored"})
    assert sql_store.get_status(entity_id) == "publish"

    assert sql_store.delete_entity(entity_id)
    assert sql_store.get_fields(entity_id) is None
    assert not sql_store.delete_entity(entity_id)


def test_sql_store_duplicate_external_id_raises_persistence_error(sql_store: SqlContentStore):
    sql_store.create_entity({"external_id": 5})
    with pytest.raises(PersistenceError):
        sql_store.create_entity({"external_id": 5})


def test_sql_store_media_terms_and_relations(sql_store: SqlContentStore):
    entity_id = sql_store.create_entity({"external_id": 1})
    agency_id = sql_store.create_entity({"external_id": 7}, kind="agency")

    first = sql_store.attach_media(entity_id, "https://img.test/1.jpg", "featured", position=0)
    second = sql_store.attach_media(entity_id, "https://img.test/2.jpg", "gallery", position=1)
    assert [m["url"] for m in sql_store.get_media(entity_id)] == ["https://img.test/1.jpg", "https://img.test/2.jpg"]
    assert sql_store.update_media(second, "featured", position=0)
    assert not sql_store.update_media(9999, "gallery")
    assert sql_store.detach_media(entity_id, [first]) == 1
    assert sql_store.detach_media(entity_id, []) == 0
    assert sql_store.get_media(entity_id) == [
        {"media_id": second, "url": "https://img.test/2.jpg", "role": "featured", "position": 0}
    ]

    sql_store.set_taxonomy(entity_id, "property_city", ["Trento", "Rovereto"])
    sql_store.set_taxonomy(entity_id, "property_city", ["Arco"])
    assert sql_store.get_taxonomy(entity_id, "property_city") == ["Arco"]
    sql_store.set_taxonomy(entity_id, "property_city", [])
    assert sql_store.get_taxonomy(entity_id, "property_city") == []

    sql_store.set_relation(entity_id, "agency", agency_id)
    assert sql_store.get_relation(entity_id, "agency") == agency_id
    sql_store.set_relation(entity_id, "agency", None)
    assert sql_store.get_relation(entity_id, "agency") is None


def test_persist_entity_creates_full_bundle():
    store = InMemoryContentStore()
    gallery = [
        GalleryItem("https://img.test/1.jpg", "featured", 0, 1),
        GalleryItem("https://img.test/2.jpg", "gallery", 1, 2),
        GalleryItem("https://img.test/3.jpg", "gallery", 2, 3),
    ]

    outcome = persist_entity(store, _mapped(gallery=gallery), agency_target_id=42, media_workers=4)

    assert outcome.created is True
    assert outcome.media == MediaSync(attached=3)
    entity = store.entities[outcome.target_id]
    assert entity.fields["external_id"] == 100
    assert entity.fields["content_hash"] == "a" * 32
    assert entity.taxonomies[FEATURES_TAXONOMY] == ["giardino"]
    assert entity.taxonomies["property_county_state"] == ["Trento"]
    assert sorted((m["position"], m["role"]) for m in entity.media) == [(0, "featured"), (1, "gallery"), (2, "gallery")]
    assert entity.relations == {AGENCY_RELATION: 42}


def test_persist_entity_update_drops_gone_media_and_clears_agency():
    store = InMemoryContentStore()
    gallery = [GalleryItem("https://img.test/1.jpg", "featured", 0, 1)]
    entity_id = persist_entity(store, _mapped(gallery=gallery), agency_target_id=42).target_id

    outcome = persist_entity(store, _mapped(title="Nuovo titolo"), target_id=entity_id)

    assert outcome.target_id == entity_id
    assert outcome.created is False
    assert outcome.media == MediaSync(removed=1)
    entity = store.entities[entity_id]
    assert entity.fields["title"] == "Nuovo titolo"
    assert entity.media == []
    assert entity.relations == {}


def test_update_with_unchanged_gallery_keeps_media_ids(sql_store: SqlContentStore):
    gallery = [
        GalleryItem("https://img.test/1.jpg", "featured", 0, 1),
        GalleryItem("https://img.test/2.jpg", "gallery", 1, 2),
    ]
    entity_id = persist_entity(sql_store, _mapped(gallery=gallery)).target_id
    media_ids = [m["media_id"] for m in sql_store.get_media(entity_id)]

    outcome = persist_entity(sql_store, _mapped(title="Nuovo titolo", gallery=gallery), target_id=entity_id)

    assert outcome.media == MediaSync(reused=2)
    assert [m["media_id"] for m in sql_store.get_media(entity_id)] == media_ids


def test_update_reuses_known_urls_and_reorders_roles():
    store = InMemoryContentStore()
    entity_id = persist_entity(
        store,
        _mapped(
            gallery=[
                GalleryItem("https://img.test/1.jpg", "featured", 0, 1),
                GalleryItem("https://img.test/2.jpg", "gallery", 1, 2),
            ]
        ),
    ).target_id
    ids_by_url = {m["url"]: m["media_id"] for m in store.entities[entity_id].media}

    outcome = persist_entity(
        store,
        _mapped(
            gallery=[
                GalleryItem("https://img.test/2.jpg", "featured", 0, 2),
                GalleryItem("https://img.test/3.jpg", "gallery", 1, 3),
            ]
        ),
        target_id=entity_id,
    )

    assert outcome.media == MediaSync(attached=1, reused=1, removed=1)
    media = {m["url"]: m for m in store.entities[entity_id].media}
    assert set(media) == {"https://img.test/2.jpg", "https://img.test/3.jpg"}
    assert media["https://img.test/2.jpg"]["media_id"] == ids_by_url["https://img.test/2.jpg"]
    assert (media["https://img.test/2.jpg"]["role"], media["https://img.test/2.jpg"]["position"]) == ("featured", 0)


def test_persist_entity_recreates_missing_target():
    store = InMemoryContentStore()

    outcome = persist_entity(store, _mapped(), target_id=99)

    assert outcome.created is True
    assert outcome.target_id != 99
    assert store.find_by_external_id(100) == outcome.target_id


def test_persist_entity_falls_back_to_entity_found_by_external_id():
    store = InMemoryContentStore()
    existing = store.create_entity({"external_id": 100, "title": "Vecchio"})

    outcome = persist_entity(store, _mapped(), target_id=99)

    assert outcome.created is False
    assert outcome.target_id == existing
    assert store.entities[existing].fields["title"] == "Immobile a Trento"
