"""Configuration loading, validation and typed views."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from feedsync.common.errors import ConfigError
from feedsync.common.fs import read_yaml
from feedsync.common.schema import (
    validate_feed_schema_config,
    validate_mapping_config,
    validate_settings_config,
)


@dataclass(frozen=True)
class FeedSettings:
    url: str
    username: str = ""
    password: str = ""
    timeout_seconds: float = 300.0
    max_bytes: int = 500 * 1024 * 1024
    keep_downloads_hours: int = 24


@dataclass(frozen=True)
class ImportSettings:
    chunk_size: int = 25
    min_chunk_size: int = 5
    sleep_seconds: float = 1.0
    max_memory_mb: int = 256
    max_errors: int = 10
    max_execution_time: int = 3600
    allowed_regions: tuple[str, ...] = ()
    allowed_categories: tuple[int, ...] = ()
    delete_policy: str = "soft"
    backup_before_import: bool = False
    retention_days: int = 90
    media_workers: int = 1

    @classmethod
    def from_config(cls, cfg: dict) -> "ImportSettings":
        # Clamp to the floors the reader and throttle rely on.
        return cls(
            chunk_size=max(1, int(cfg["chunk_size"])),
            min_chunk_size=max(1, int(cfg["min_chunk_size"])),
            sleep_seconds=max(0.0, float(cfg["sleep_seconds"])),
            max_memory_mb=max(64, int(cfg["max_memory_mb"])),
            max_errors=max(1, int(cfg["max_errors"])),
            max_execution_time=max(0, int(cfg["max_execution_time"])),
            allowed_regions=tuple(str(code) for code in cfg["allowed_regions"]),
            allowed_categories=tuple(int(code) for code in cfg["allowed_categories"]),
            delete_policy=str(cfg["delete_policy"]),
            backup_before_import=bool(cfg["backup_before_import"]),
            retention_days=max(0, int(cfg["retention_days"])),
            media_workers=max(1, int(cfg["media_workers"])),
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "chunk_size": self.chunk_size,
            "min_chunk_size": self.min_chunk_size,
            "sleep_seconds": self.sleep_seconds,
            "max_memory_mb": self.max_memory_mb,
            "max_errors": self.max_errors,
            "max_execution_time": self.max_execution_time,
            "allowed_regions": list(self.allowed_regions),
            "allowed_categories": list(self.allowed_categories),
            "delete_policy": self.delete_policy,
            "backup_before_import": self.backup_before_import,
            "retention_days": self.retention_days,
            "media_workers": self.media_workers,
        }


@dataclass(frozen=True)
class StorageSettings:
    tracking_url: str
    content_url: str

    def resolve(self, data_dir: Path) -> "StorageSettings":
        root = data_dir.resolve().as_posix()
        return StorageSettings(
            tracking_url=self.tracking_url.format(data_dir=root),
            content_url=self.content_url.format(data_dir=root),
        )


@dataclass(frozen=True)
class NotificationSettings:
    enabled: bool = False
    on_success: bool = False
    on_error: bool = True
    webhook_url: str = ""


@dataclass(frozen=True)
class FeedSchema:
    record_tag: str = "annuncio"
    info_tag: str = "info"
    feature_group: str = "info_inserite"
    feature_tag: str = "info"
    numeric_group: str = "dati_inseriti"
    numeric_tag: str = "dati"
    media_group: str = "file_allegati"
    media_tag: str = "allegato"
    value_tag: str = "valore_assegnato"
    media_url_tag: str = "file_path"
    id_attribute: str = "id"
    type_attribute: str = "type"
    cadastral_tag: str = "catasto"
    agency_tag: str = "agenzia"
    fields: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: dict) -> "FeedSchema":
        known = set(cls.__dataclass_fields__) - {"fields"}
        values = {key: str(value) for key, value in cfg.items() if key in known}
        fields = {name: tuple(str(alias) for alias in aliases) for name, aliases in cfg["fields"].items()}
        return cls(fields=fields, **values)

    def aliases(self, name: str) -> tuple[str, ...]:
        return self.fields.get(name, (name,))


@dataclass(frozen=True)
class MappingTables:
    categories: dict[int, str]
    feature_slugs: dict[int, str]
    feature_labels: dict[str, str]
    feature_ids: dict[str, int]
    numeric_fields: dict[str, int]
    surface_priority: tuple[str, ...]
    energy_classes: dict[int, str]
    energy_letters: tuple[str, ...]
    regions: dict[str, str]
    provinces: dict[str, str]
    floors: dict[str, str]
    image_types: frozenset[str]
    floor_plan_types: frozenset[str]
    title_fallback: str
    generic_category: str
    max_notable_features: int
    region_prefix_length: int = 3
    excerpt_length: int = 150
    max_extensions: int = 20

    @classmethod
    def from_config(cls, cfg: dict) -> "MappingTables":
        return cls(
            categories={int(k): str(v) for k, v in cfg["categories"].items()},
            feature_slugs={int(k): str(v) for k, v in cfg["feature_slugs"].items()},
            feature_labels={str(k): str(v) for k, v in cfg["feature_labels"].items()},
            feature_ids={str(k): int(v) for k, v in cfg["feature_ids"].items()},
            numeric_fields={str(k): int(v) for k, v in cfg["numeric_fields"].items()},
            surface_priority=tuple(cfg["surface_priority"]),
            energy_classes={int(k): str(v).upper() for k, v in cfg["energy_classes"].items()},
            energy_letters=tuple(str(v).upper() for v in cfg["energy_letters"]),
            regions={str(k): str(v) for k, v in cfg["regions"].items()},
            provinces={str(k).upper(): str(v) for k, v in cfg["provinces"].items()},
            floors={str(k).upper(): str(v) for k, v in cfg["floors"].items()},
            image_types=frozenset(str(v).lower() for v in cfg["image_types"]),
            floor_plan_types=frozenset(str(v).lower() for v in cfg["floor_plan_types"]),
            title_fallback=str(cfg["title"]["fallback"]),
            generic_category=str(cfg["title"]["generic_category"]),
            max_notable_features=int(cfg["title"]["max_notable_features"]),
            region_prefix_length=int(cfg["region_prefix_length"]),
            excerpt_length=int(cfg["excerpt_length"]),
            max_extensions=int(cfg["max_extensions"]),
        )

    def feature_id(self, name: str) -> int:
        return self.feature_ids[name]


@dataclass(frozen=True)
class ConfigBundle:
    feed: FeedSettings
    import_settings: ImportSettings
    storage: StorageSettings
    notifications: NotificationSettings
    feed_schema: FeedSchema
    mapping: MappingTables


def _deep_merge(base: Any, overlay: Any) -> Any:
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for key, value in overlay.items():
            if key in merged:
                merged[key] = _deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged
    return overlay


def _load_yaml_with_overlay(path: Path, overlay_path: Path | None) -> dict:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    base = read_yaml(path) or {}
    if overlay_path is None or not overlay_path.exists():
        return base
    overlay = read_yaml(overlay_path) or {}
    return _deep_merge(base, overlay)


def _overlay_for(overlay_config_dir: Path | None, name: str) -> Path | None:
    if overlay_config_dir is None:
        return None
    return overlay_config_dir / name


def load_all_configs(
    config_dir: Path,
    *,
    allow_unknown: bool = False,
    overlay_config_dir: Path | None = None,
) -> ConfigBundle:
    settings = validate_settings_config(
        _load_yaml_with_overlay(config_dir / "settings.yml", _overlay_for(overlay_config_dir, "settings.yml")),
        allow_unknown=allow_unknown,
    )
    feed_schema = validate_feed_schema_config(
        _load_yaml_with_overlay(config_dir / "feed_schema.yml", _overlay_for(overlay_config_dir, "feed_schema.yml")),
        allow_unknown=allow_unknown,
    )
    mapping = validate_mapping_config(
        _load_yaml_with_overlay(config_dir / "mapping.yml", _overlay_for(overlay_config_dir, "mapping.yml")),
        allow_unknown=allow_unknown,
    )

    feed_cfg = settings["feed"]
    notify_cfg = settings["notifications"]
    return ConfigBundle(
        feed=FeedSettings(
            url=str(feed_cfg["url"]),
            username=str(feed_cfg["username"] or ""),
            password=str(feed_cfg["password"] or ""),
            timeout_seconds=float(feed_cfg["timeout_seconds"]),
            max_bytes=int(feed_cfg["max_bytes"]),
            keep_downloads_hours=int(feed_cfg["keep_downloads_hours"]),
        ),
        import_settings=ImportSettings.from_config(settings["import"]),
        storage=StorageSettings(
            tracking_url=str(settings["storage"]["tracking_url"]),
            content_url=str(settings["storage"]["content_url"]),
        ),
        notifications=NotificationSettings(
            enabled=bool(notify_cfg["enabled"]),
            on_success=bool(notify_cfg["on_success"]),
            on_error=bool(notify_cfg["on_error"]),
            webhook_url=str(notify_cfg["webhook_url"] or ""),
        ),
        feed_schema=FeedSchema.from_config(feed_schema),
        mapping=MappingTables.from_config(mapping),
    )
