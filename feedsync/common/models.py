"""Data models used across the pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class MediaItem:
    media_id: int
    media_type: str
    url: str


@dataclass(frozen=True)
class SourceRecord:
    external_id: int
    price: float | None = None
    size: float | None = None
    title: str = ""
    description: str = ""
    abstract: str = ""
    address: str = ""
    city: str = ""
    zip_code: str = ""
    province: str = ""
    region_code: str = ""
    latitude: float | None = None
    longitude: float | None = None
    category_id: int | None = None
    contract: str = ""
    energy_class: str = ""
    floor: str = ""
    construction_year: str = ""
    deleted: bool = False
    features: dict[int, int] = field(default_factory=dict)
    numeric_data: dict[int, float] = field(default_factory=dict)
    media: tuple[MediaItem, ...] = ()
    cadastral: dict[str, str] | None = None
    agency: dict[str, str] | None = None
    extras: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AgencyRecord:
    external_id: int
    name: str
    contact_person: str = ""
    vat_number: str = ""
    address: str = ""
    city: str = ""
    province: str = ""
    city_istat: str = ""
    email: str = ""
    website: str = ""
    logo_url: str = ""
    phone: str = ""
    mobile: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CoreFields:
    title: str
    description: str
    excerpt: str
    slug: str
    reference: str
    price: float | None
    size: float | None
    bedrooms: int | None
    bathrooms: int | None
    rooms: int | None
    address: str
    full_address: str
    city: str
    zip_code: str
    province: str
    province_name: str
    region_code: str
    region_name: str
    latitude: float | None
    longitude: float | None
    energy_class: str
    contract: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GalleryItem:
    url: str
    role: str
    position: int
    media_id: int

    @property
    def is_featured(self) -> bool:
        return self.role == "featured"


@dataclass(frozen=True)
class CadastralData:
    destination: str = ""
    income: str = ""
    sheet: str = ""
    parcel: str = ""
    subordinate: str = ""

    @property
    def is_empty(self) -> bool:
        return not any(asdict(self).values())

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class MappedEntity:
    external_id: int
    core: CoreFields
    taxonomies: dict[str, tuple[str, ...]]
    features: tuple[str, ...]
    gallery: tuple[GalleryItem, ...]
    cadastral: CadastralData
    agency: AgencyRecord | None
    extensions: dict[str, str]
    content_hash: str
    source: SourceRecord

    @property
    def featured_image(self) -> GalleryItem | None:
        for item in self.gallery:
            if item.is_featured:
                return item
        return None

    def entity_fields(self) -> dict[str, Any]:
        fields = self.core.to_dict()
        fields["external_id"] = self.external_id
        fields["content_hash"] = self.content_hash
        fields["features"] = list(self.features)
        fields["cadastral"] = self.cadastral.to_dict()
        fields["extensions"] = dict(self.extensions)
        return fields


class ChangeAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    SKIP = "skip"


@dataclass(frozen=True)
class ChangeDecision:
    action: ChangeAction
    target_id: int | None = None
    reason: str = ""


@dataclass(frozen=True)
class TrackingRecord:
    external_id: int
    content_hash: str
    target_id: int | None
    status: str
    last_seen: datetime | None
    region: str | None = None
    category: int | None = None
    price: float | None = None
    agency_id: int | None = None
    target_deleted: bool = False


@dataclass(frozen=True)
class DenormalizedFields:
    region: str | None = None
    category: int | None = None
    price: float | None = None
    agency_id: int | None = None


@dataclass(frozen=True)
class ProgressSnapshot:
    run_id: str
    chunk_index: int
    processed_count: int
    inserted: int
    updated: int
    skipped: int
    errors: int
    memory_mb: float
    elapsed_seconds: float
    chunk_size: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
