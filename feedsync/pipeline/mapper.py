"""Record mapper: SourceRecord -> MappedEntity using static lookup tables."""

from __future__ import annotations

import html
import logging
import re
import unicodedata
from datetime import datetime
from typing import Callable

from feedsync.common.config_loader import MappingTables
from feedsync.common.logging import log_event
from feedsync.common.models import CadastralData, CoreFields, GalleryItem, MappedEntity, SourceRecord
from feedsync.common.time_utils import utc_now
from feedsync.pipeline.agencies import parse_agency
from feedsync.pipeline.fingerprint import fingerprint

ROOMS_SENTINEL = -1
ROOMS_SENTINEL_VALUE = 4
RENT_CONTRACTS = {"affitto", "rent", "locazione"}

# Feed element -> CadastralData attribute.
CADASTRAL_FIELDS = {
    "destinazione_uso": "destination",
    "rendita_catastale": "income",
    "foglio": "sheet",
    "particella": "parcel",
    "subalterno": "subordinate",
}

TAG_RE = re.compile(r"<[^>]+>")


def clean_text(value: str) -> str:
    text = TAG_RE.sub(" ", html.unescape(value or ""))
    return " ".join(text.split())


def make_excerpt(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    cut = text[:length]
    if " " in cut:
        cut = cut[: cut.rfind(" ")]
    return cut.rstrip(" ,.;:") + "..."


def slugify(value: str) -> str:
    ascii_text = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", "-", ascii_text.lower()).strip("-")


def room_count(value: int | None) -> int | None:
    if value is None:
        return None
    if value == ROOMS_SENTINEL:
        return ROOMS_SENTINEL_VALUE
    if value < 0:
        return None
    return value


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class RecordMapper:
    def __init__(
        self,
        tables: MappingTables,
        logger: logging.Logger,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tables = tables
        self.logger = logger
        self.clock = clock

    def _diagnostic(self, record: SourceRecord, message: str, event: str) -> None:
        log_event(
            self.logger,
            message,
            level="debug",
            stage="map",
            event=event,
            status="ok",
            external_id=record.external_id,
        )

    def _feature(self, record: SourceRecord, name: str) -> int | None:
        return record.features.get(self.tables.feature_id(name))

    def _feature_active(self, record: SourceRecord, name: str) -> bool:
        value = self._feature(record, name)
        return value is not None and value > 0

    def region_prefix(self, record: SourceRecord) -> str:
        return record.region_code[: self.tables.region_prefix_length]

    def category_name(self, record: SourceRecord) -> str | None:
        if record.category_id is None:
            return None
        return self.tables.categories.get(record.category_id)

    def feature_flags(self, record: SourceRecord) -> tuple[str, ...]:
        flags = []
        for feature_id in sorted(record.features):
            slug = self.tables.feature_slugs.get(feature_id)
            if slug is not None and record.features[feature_id] > 0:
                flags.append(slug)
        return tuple(flags)

    def derive_title(self, record: SourceRecord, flags: tuple[str, ...]) -> str:
        explicit = clean_text(record.title) or clean_text(record.abstract)
        if explicit:
            return explicit

        category = self.category_name(record)
        location = record.city or self.tables.regions.get(self.region_prefix(record), "")
        if category is None and not location:
            self._diagnostic(record, "no title inputs, using fallback", "TITLE_FALLBACK")
            return self.tables.title_fallback

        parts = [category or self.tables.generic_category]
        notable = [self.tables.feature_labels[flag] for flag in flags if flag in self.tables.feature_labels]
        notable = notable[: self.tables.max_notable_features]
        if notable:
            parts.append("con " + " e ".join(notable))
        if location:
            parts.append(f"a {location}")
        return " ".join(parts)

    def best_surface(self, record: SourceRecord) -> float | None:
        for name in self.tables.surface_priority:
            if name == "size":
                value = record.size
            else:
                value = record.numeric_data.get(self.tables.numeric_fields[name])
            if value is not None and value > 0:
                return float(value)
        return None

    def energy_class(self, record: SourceRecord) -> str:
        code = self._feature(record, "energy_class")
        if code is not None and code in self.tables.energy_classes:
            return self.tables.energy_classes[code]
        letter = record.energy_class.strip().upper()
        if letter in self.tables.energy_letters:
            return letter
        return "NC"

    def contract(self, record: SourceRecord) -> str:
        if self._feature_active(record, "rent"):
            return "rent"
        if self._feature_active(record, "sale"):
            return "sale"
        return "rent" if record.contract in RENT_CONTRACTS else "sale"

    def taxonomies(self, record: SourceRecord, contract: str) -> dict[str, tuple[str, ...]]:
        category = self.category_name(record)
        if record.category_id is not None and category is None:
            self._diagnostic(record, f"unknown category {record.category_id} dropped", "CATEGORY_UNKNOWN")
        region_name = self.tables.regions.get(self.region_prefix(record))
        province_name = self.tables.provinces.get(record.province)
        county = region_name or province_name
        return {
            "property_category": (category,) if category else (),
            "property_action_category": ("Affitto",) if contract == "rent" else ("Vendita",),
            "property_city": (record.city,) if record.city else (),
            "property_county_state": (county,) if county else (),
        }

    def gallery(self, record: SourceRecord) -> tuple[GalleryItem, ...]:
        """Images keep feed order; the first image-typed item is the featured one."""
        images: list[GalleryItem] = []
        plans: list[GalleryItem] = []
        for item in record.media:
            media_type = item.media_type or "foto"
            if media_type in self.tables.image_types:
                role = "featured" if not images else "gallery"
                images.append(GalleryItem(url=item.url, role=role, position=len(images), media_id=item.media_id))
            elif media_type in self.tables.floor_plan_types:
                plans.append(GalleryItem(url=item.url, role="floor_plan", position=len(plans), media_id=item.media_id))
            else:
                self._diagnostic(record, f"media type {media_type!r} ignored", "MEDIA_TYPE_IGNORED")
        return tuple(images + plans)

    def cadastral(self, record: SourceRecord) -> CadastralData:
        if not record.cadastral:
            return CadastralData()
        return CadastralData(
            **{attribute: record.cadastral.get(element, "") for element, attribute in CADASTRAL_FIELDS.items()}
        )

    def construction_year(self, record: SourceRecord) -> str | None:
        raw = record.construction_year.strip()
        if not raw.isdigit():
            return None
        year = int(raw)
        if 1800 <= year <= self.clock().year + 5:
            return str(year)
        return None

    def floor_label(self, record: SourceRecord) -> str | None:
        raw = record.floor.strip().upper()
        if not raw:
            return None
        if raw in self.tables.floors:
            return self.tables.floors[raw]
        if raw.lstrip("-").isdigit():
            return f"Piano {int(raw)}"
        return raw

    def heating(self, record: SourceRecord) -> str:
        if self._feature_active(record, "autonomous_heating"):
            return "Autonomo"
        if self._feature_active(record, "floor_heating"):
            return "A pavimento"
        return "Centralizzato"

    def extensions(self, record: SourceRecord) -> dict[str, str]:
        values: dict[str, str | None] = {
            "construction_year": self.construction_year(record),
            "floor": self.floor_label(record),
            "heating": self.heating(record),
        }
        for name, field_id in sorted(self.tables.numeric_fields.items()):
            value = record.numeric_data.get(field_id)
            if value is not None and value > 0:
                values[name] = _format_number(value)
        for key in sorted(record.extras):
            values.setdefault(key, record.extras[key])

        bounded = {key: value for key, value in values.items() if value}
        if len(bounded) > self.tables.max_extensions:
            keys = list(bounded)
            dropped = keys[self.tables.max_extensions :]
            self._diagnostic(record, f"extension map truncated, dropped {', '.join(dropped)}", "EXTENSIONS_TRUNCATED")
            bounded = {key: bounded[key] for key in keys[: self.tables.max_extensions]}
        return bounded

    def map(self, record: SourceRecord) -> MappedEntity:
        flags = self.feature_flags(record)
        title = self.derive_title(record, flags)
        description = clean_text(record.description)
        contract = self.contract(record)
        region_code = self.region_prefix(record)

        latitude, longitude = record.latitude, record.longitude
        if not latitude or not longitude:
            latitude, longitude = None, None

        core = CoreFields(
            title=title,
            description=description,
            excerpt=make_excerpt(description, self.tables.excerpt_length),
            slug=f"{slugify(title)}-{record.external_id}",
            reference=f"RS-{record.external_id}",
            price=record.price if record.price and record.price > 0 else None,
            size=self.best_surface(record),
            bedrooms=room_count(self._feature(record, "bedrooms")),
            bathrooms=room_count(self._feature(record, "bathrooms")),
            rooms=room_count(self._feature(record, "rooms")),
            address=record.address,
            full_address=", ".join(part for part in (record.address, record.city, record.province) if part),
            city=record.city,
            zip_code=record.zip_code,
            province=record.province,
            province_name=self.tables.provinces.get(record.province, ""),
            region_code=region_code,
            region_name=self.tables.regions.get(region_code, ""),
            latitude=latitude,
            longitude=longitude,
            energy_class=self.energy_class(record),
            contract=contract,
        )

        agency = parse_agency(record.agency)
        if record.agency and agency is None:
            self._diagnostic(record, "agency block incomplete, ignored", "AGENCY_INCOMPLETE")

        return MappedEntity(
            external_id=record.external_id,
            core=core,
            taxonomies=self.taxonomies(record, contract),
            features=flags,
            gallery=self.gallery(record),
            cadastral=self.cadastral(record),
            agency=agency,
            extensions=self.extensions(record),
            content_hash=fingerprint(record),
            source=record,
        )
