from pathlib import Path

import pytest

from feedsync.common.models import AgencyRecord, DenormalizedFields, SourceRecord
from feedsync.pipeline.agencies import (
    AgencyResolver,
    agency_description,
    clean_url,
    cleanup_orphans,
    format_phone,
    parse_agency,
)
from feedsync.pipeline.tracking import ChangeTracker
from feedsync.store.memory import InMemoryContentStore


@pytest.fixture
def tracker(tmp_path: Path, logger) -> ChangeTracker:
    tracker = ChangeTracker.from_url(f"sqlite:///{tmp_path / 'tracking.sqlite'}", logger)
    tracker.ensure_schema()
    yield tracker
    tracker.close()


@pytest.fixture
def store() -> InMemoryContentStore:
    return InMemoryContentStore()


def _agency(**overrides) -> AgencyRecord:
    values = {"external_id": 7, "name": "Alpi Immobiliare", "phone": "+390461000000", "email": "info@alpi.test"}
    values.update(overrides)
    return AgencyRecord(**values)


def test_format_phone_and_clean_url():
    assert format_phone("0461 23.45.67") == "+390461234567"
    assert format_phone("339 1234567") == "+393391234567"
    assert format_phone("39 0461 1") == "+3904611"
    assert format_phone("+41 44 000") == "+4144000"
    assert format_phone("") == ""
    assert clean_url("www.alpi.test") == "http://www.alpi.test"
    assert clean_url("HTTPS://alpi.test") == "HTTPS://alpi.test"
    assert clean_url("  ") == ""


def test_parse_agency_normalises_fields():
    agency = parse_agency(
        {
            "id": " 7 ",
            "ragione_sociale": "Alpi Immobiliare",
            "email": "INFO@Alpi.Test",
            "url": "alpi.test",
            "telefono": "0461 000000",
            "provincia": "tn",
        }
    )
    assert agency == AgencyRecord(
        external_id=7,
        name="Alpi Immobiliare",
        email="info@alpi.test",
        website="http://alpi.test",
        phone="+390461000000",
        province="TN",
    )


@pytest.mark.parametrize(
    "block",
    [
        None,
        {},
        {"id": "0", "ragione_sociale": "Alpi"},
        {"id": "abc", "ragione_sociale": "Alpi"},
        {"id": "7", "ragione_sociale": " "},
        {"id": "7", "ragione_sociale": "Alpi", "deleted": "1"},
    ],
)
def test_parse_agency_rejects_incomplete_blocks(block):
    assert parse_agency(block) is None


def test_agency_description_lists_available_parts():
    text = agency_description(_agency(city="Trento", contact_person="Anna"))
    assert text.splitlines() == [
        "Agenzia immobiliare: Alpi Immobiliare",
        "Referente: Anna",
        "Indirizzo: Trento",
        "Contatti: +390461000000 / info@alpi.test",
    ]


def test_resolve_reads_agency_block(tracker, store, logger):
    resolver = AgencyResolver(tracker, store, logger)
    record = SourceRecord(external_id=1, agency={"id": "7", "ragione_sociale": "Alpi"})
    assert resolver.resolve(record).external_id == 7
    assert resolver.resolve(SourceRecord(external_id=2)) is None


def test_upsert_creates_once_and_is_idempotent(tracker, store, logger):
    resolver = AgencyResolver(tracker, store, logger)
    agency = _agency(logo_url="https://img.test/logo.png")

    first = resolver.upsert(agency)
    writes_after_create = store.writes
    assert resolver.upsert(agency) == first
    assert store.writes == writes_after_create

    # Fresh resolver simulates the next run: tracked contact hash short-circuits the write.
    next_run = AgencyResolver(tracker, store, logger)
    assert next_run.upsert(agency) == first
    assert store.writes == writes_after_create
    assert next_run.stats.to_dict() == {"created": 0, "updated": 0, "unchanged": 1}

    assert store.count("agency") == 1
    entity = store.entities[first]
    assert entity.fields["title"] == "Alpi Immobiliare"
    assert [m["role"] for m in entity.media] == ["logo"]
    assert tracker.get_agency(7)[0] == first


def test_upsert_updates_in_place_when_contact_details_change(tracker, store, logger):
    resolver = AgencyResolver(tracker, store, logger)
    first = resolver.upsert(_agency())

    changed = AgencyResolver(tracker, store, logger)
    assert changed.upsert(_agency(email="new@alpi.test")) == first
    assert changed.stats.updated == 1
    assert store.count("agency") == 1
    assert store.get_fields(first)["email"] == "new@alpi.test"


def test_contact_change_keeps_the_attached_logo(tracker, store, logger):
    first = AgencyResolver(tracker, store, logger).upsert(_agency(logo_url="https://img.test/logo.png"))
    logo_ids = [m["media_id"] for m in store.entities[first].media]

    AgencyResolver(tracker, store, logger).upsert(_agency(email="new@alpi.test", logo_url="https://img.test/logo.png"))

    assert [m["media_id"] for m in store.entities[first].media] == logo_ids


def test_upsert_adopts_existing_entity_found_by_external_id(tracker, store, logger):
    existing = store.create_entity({"external_id": 7, "title": "old"}, kind="agency")
    resolver = AgencyResolver(tracker, store, logger)

    assert resolver.upsert(_agency()) == existing
    assert resolver.stats.updated == 1
    assert store.count("agency") == 1


def test_cleanup_orphans_removes_unlinked_agencies(tracker, store, logger):
    resolver = AgencyResolver(tracker, store, logger)
    linked = resolver.upsert(_agency())
    orphan = resolver.upsert(_agency(external_id=8, name="Lago Case"))
    tracker.commit(100, "h" * 32, 1, DenormalizedFields(agency_id=7))

    removed = cleanup_orphans(tracker, store, logger)

    assert removed == 1
    assert store.get_fields(orphan) is None
    assert store.get_fields(linked) is not None
    assert tracker.tracked_agencies() == {7: linked}
