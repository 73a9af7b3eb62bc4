"""Minimal strict schemas for YAML config validation."""

from __future__ import annotations

from feedsync.common.constants import DELETE_POLICIES
from feedsync.common.errors import ConfigError

SETTINGS_SECTIONS = {"feed", "import", "storage", "notifications"}
FEED_KEYS = {"url", "username", "password", "timeout_seconds", "max_bytes", "keep_downloads_hours"}
IMPORT_KEYS = {
    "chunk_size",
    "min_chunk_size",
    "sleep_seconds",
    "max_memory_mb",
    "max_errors",
    "max_execution_time",
    "allowed_regions",
    "allowed_categories",
    "delete_policy",
    "backup_before_import",
    "retention_days",
    "media_workers",
}
STORAGE_KEYS = {"tracking_url", "content_url"}
NOTIFICATION_KEYS = {"enabled", "on_success", "on_error", "webhook_url"}

FEED_SCHEMA_KEYS = {
    "record_tag",
    "info_tag",
    "feature_group",
    "feature_tag",
    "numeric_group",
    "numeric_tag",
    "media_group",
    "media_tag",
    "value_tag",
    "media_url_tag",
    "id_attribute",
    "type_attribute",
    "cadastral_tag",
    "agency_tag",
    "fields",
}
RECORD_FIELDS = {
    "external_id",
    "price",
    "size",
    "title",
    "description",
    "abstract",
    "address",
    "city",
    "zip_code",
    "province",
    "region_code",
    "latitude",
    "longitude",
    "category_id",
    "contract",
    "energy_class",
    "floor",
    "construction_year",
    "deleted",
}

MAPPING_KEYS = {
    "categories",
    "feature_slugs",
    "feature_labels",
    "feature_ids",
    "numeric_fields",
    "surface_priority",
    "energy_classes",
    "energy_letters",
    "regions",
    "provinces",
    "floors",
    "image_types",
    "floor_plan_types",
    "title",
    "region_prefix_length",
    "excerpt_length",
    "max_extensions",
}
NAMED_FEATURES = {
    "bathrooms",
    "bedrooms",
    "rooms",
    "sale",
    "rent",
    "energy_class",
    "autonomous_heating",
    "floor_heating",
}


def _assert_required_keys(obj: dict, required: set[str], ctx: str) -> None:
    if not isinstance(obj, dict):
        raise ConfigError(f"{ctx} must be a mapping")
    missing = required - set(obj)
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ConfigError(f"Missing keys in {ctx}: {missing_str}")


def _assert_no_unknown_keys(obj: dict, known: set[str], ctx: str, allow_unknown: bool) -> None:
    if allow_unknown:
        return
    unknown = set(obj) - known
    if unknown:
        unknown_str = ", ".join(sorted(str(key) for key in unknown))
        raise ConfigError(f"Unknown keys in {ctx}: {unknown_str}")


def _assert_int_keys(obj: dict, ctx: str) -> None:
    for key in obj:
        if not isinstance(key, int):
            raise ConfigError(f"{ctx} keys must be integers, got {key!r}")


def validate_settings_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    _assert_required_keys(cfg, SETTINGS_SECTIONS, "settings")
    _assert_no_unknown_keys(cfg, SETTINGS_SECTIONS, "settings", allow_unknown)

    sections = (
        ("feed", FEED_KEYS),
        ("import", IMPORT_KEYS),
        ("storage", STORAGE_KEYS),
        ("notifications", NOTIFICATION_KEYS),
    )
    for name, keys in sections:
        _assert_required_keys(cfg[name], keys, f"settings.{name}")
        _assert_no_unknown_keys(cfg[name], keys, f"settings.{name}", allow_unknown)

    policy = cfg["import"]["delete_policy"]
    if policy not in DELETE_POLICIES:
        raise ConfigError(f"settings.import.delete_policy must be one of {', '.join(DELETE_POLICIES)}")
    for key in ("allowed_regions", "allowed_categories"):
        if not isinstance(cfg["import"][key], list):
            raise ConfigError(f"settings.import.{key} must be a list")
    return cfg


def validate_feed_schema_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    _assert_required_keys(cfg, FEED_SCHEMA_KEYS, "feed_schema")
    _assert_no_unknown_keys(cfg, FEED_SCHEMA_KEYS, "feed_schema", allow_unknown)
    _assert_required_keys(cfg["fields"], RECORD_FIELDS, "feed_schema.fields")
    _assert_no_unknown_keys(cfg["fields"], RECORD_FIELDS, "feed_schema.fields", allow_unknown)
    for name, aliases in cfg["fields"].items():
        if not isinstance(aliases, list) or not aliases:
            raise ConfigError(f"feed_schema.fields.{name} must be a non-empty list")
    return cfg


def validate_mapping_config(cfg: dict, *, allow_unknown: bool = False) -> dict:
    _assert_required_keys(cfg, MAPPING_KEYS, "mapping")
    _assert_no_unknown_keys(cfg, MAPPING_KEYS, "mapping", allow_unknown)

    for table in ("categories", "feature_slugs", "energy_classes"):
        _assert_int_keys(cfg[table], f"mapping.{table}")
    _assert_required_keys(cfg["feature_ids"], NAMED_FEATURES, "mapping.feature_ids")
    _assert_required_keys(cfg["title"], {"fallback", "generic_category", "max_notable_features"}, "mapping.title")

    known_surfaces = set(cfg["numeric_fields"]) | {"size"}
    unknown_surfaces = [name for name in cfg["surface_priority"] if name not in known_surfaces]
    if unknown_surfaces:
        raise ConfigError(f"Unknown surface candidates: {', '.join(unknown_surfaces)}")

    slugs = list(cfg["feature_slugs"].values())
    dupes = {slug for slug in slugs if slugs.count(slug) > 1}
    if dupes:
        raise ConfigError(f"Duplicate feature slugs: {', '.join(sorted(dupes))}")
    return cfg
