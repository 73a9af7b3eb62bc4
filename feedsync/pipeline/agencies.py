"""Agency extraction, dedup-by-external-id upsert and orphan cleanup."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from feedsync.common.errors import PersistenceError
from feedsync.common.logging import log_event
from feedsync.common.models import AgencyRecord, GalleryItem, SourceRecord
from feedsync.pipeline.fingerprint import contact_fingerprint
from feedsync.pipeline.tracking import ChangeTracker
from feedsync.store.base import ContentStore
from feedsync.store.writer import sync_media

AGENCY_KIND = "agency"

# Feed element -> AgencyRecord attribute.
AGENCY_FIELDS = {
    "ragione_sociale": "name",
    "referente": "contact_person",
    "iva": "vat_number",
    "indirizzo": "address",
    "comune": "city",
    "provincia": "province",
    "comune_istat": "city_istat",
    "email": "email",
    "url": "website",
    "logo": "logo_url",
    "telefono": "phone",
    "cellulare": "mobile",
}


def format_phone(value: str) -> str:
    digits = re.sub(r"[^\d+]", "", value or "")
    if not digits or digits.startswith("+"):
        return digits
    if digits.startswith("39"):
        return f"+{digits}"
    if digits.startswith(("0", "3")):
        return f"+39{digits}"
    return digits


def clean_url(value: str) -> str:
    url = (value or "").strip()
    if url and not re.match(r"^https?://", url, flags=re.IGNORECASE):
        url = f"http://{url}"
    return url


def parse_agency(block: dict[str, str] | None) -> AgencyRecord | None:
    """Return the agency for a raw block, or None when id/name are missing or it is flagged deleted."""
    if not block:
        return None
    raw_id = (block.get("id") or "").strip()
    if not raw_id.isdigit() or int(raw_id) <= 0:
        return None
    if (block.get("deleted") or "").strip() == "1":
        return None
    values = {attribute: (block.get(element) or "").strip() for element, attribute in AGENCY_FIELDS.items()}
    if not values["name"]:
        return None
    values["email"] = values["email"].lower()
    values["website"] = clean_url(values["website"])
    values["phone"] = format_phone(values["phone"])
    values["mobile"] = format_phone(values["mobile"])
    values["province"] = values["province"].upper()
    return AgencyRecord(external_id=int(raw_id), **values)


def agency_description(agency: AgencyRecord) -> str:
    lines = [f"Agenzia immobiliare: {agency.name}"]
    if agency.contact_person:
        lines.append(f"Referente: {agency.contact_person}")
    address = ", ".join(part for part in (agency.address, agency.city, agency.province) if part)
    if address:
        lines.append(f"Indirizzo: {address}")
    contacts = [part for part in (agency.phone, agency.mobile, agency.email) if part]
    if contacts:
        lines.append("Contatti: " + " / ".join(contacts))
    return "\n".join(lines)


def agency_fields(agency: AgencyRecord, contact_hash: str) -> dict:
    fields = agency.to_dict()
    fields["title"] = agency.name
    fields["description"] = agency_description(agency)
    fields["full_address"] = ", ".join(part for part in (agency.address, agency.city, agency.province) if part)
    fields["contact_hash"] = contact_hash
    return fields


@dataclass
class AgencyStats:
    created: int = 0
    updated: int = 0
    unchanged: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated, "unchanged": self.unchanged}


class AgencyResolver:
    def __init__(self, tracker: ChangeTracker, store: ContentStore, logger: logging.Logger) -> None:
        self.tracker = tracker
        self.store = store
        self.logger = logger
        self.stats = AgencyStats()
        self._resolved: dict[int, tuple[int, str]] = {}

    def resolve(self, record: SourceRecord) -> AgencyRecord | None:
        return parse_agency(record.agency)

    def upsert(self, agency: AgencyRecord) -> int:
        contact_hash = contact_fingerprint(agency.to_dict())
        cached = self._resolved.get(agency.external_id)
        if cached is not None and cached[1] == contact_hash:
            return cached[0]

        fields = agency_fields(agency, contact_hash)
        tracked = self.tracker.get_agency(agency.external_id)
        if tracked is not None and tracked[1] == contact_hash:
            self.stats.unchanged += 1
            self._resolved[agency.external_id] = tracked
            return tracked[0]

        target_id = tracked[0] if tracked is not None else None
        if target_id is None:
            target_id = self.store.find_by_external_id(agency.external_id, kind=AGENCY_KIND)

        if target_id is not None and self.store.update_entity(target_id, fields):
            self.stats.updated += 1
            event = "AGENCY_UPDATE"
        else:
            target_id = self.store.create_entity(fields, kind=AGENCY_KIND)
            self.stats.created += 1
            event = "AGENCY_CREATE"

        if agency.logo_url:
            sync_media(self.store, target_id, (GalleryItem(agency.logo_url, "logo", 0, 0),))
        self.tracker.commit_agency(agency.external_id, target_id, contact_hash)
        self._resolved[agency.external_id] = (target_id, contact_hash)
        log_event(
            self.logger,
            f"agency {agency.external_id} -> {target_id}",
            level="debug",
            stage="agencies",
            event=event,
            status="ok",
            external_id=agency.external_id,
        )
        return target_id


def cleanup_orphans(tracker: ChangeTracker, store: ContentStore, logger: logging.Logger) -> int:
    linked = tracker.linked_agency_ids()
    removed = 0
    for agency_id, target_id in sorted(tracker.tracked_agencies().items()):
        if agency_id in linked:
            continue
        if not store.delete_entity(target_id):
            log_event(
                logger,
                f"orphan agency {agency_id} had no entity {target_id}",
                level="warning",
                stage="agencies",
                event="AGENCY_ORPHAN_MISSING",
                status="warning",
                external_id=agency_id,
                error_code=PersistenceError.error_code,
            )
        tracker.forget_agency(agency_id)
        removed += 1
    log_event(
        logger,
        f"removed {removed} orphan agencies",
        stage="agencies",
        event="AGENCY_ORPHAN_CLEANUP",
        status="ok",
        rows_out=removed,
    )
    return removed
