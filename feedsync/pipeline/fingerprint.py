"""Content fingerprint shared by the change tracker and the record mapper."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from feedsync.common.models import SourceRecord

# Ordered; changing it invalidates every stored hash.
FINGERPRINT_FIELDS = (
    "price",
    "size",
    "description",
    "latitude",
    "longitude",
    "address",
    "deleted",
    "category_id",
)


def normalise_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        number = float(value)
        if number.is_integer():
            return str(int(number))
        return repr(number)
    return " ".join(str(value).split())


def _sorted_pairs(values: dict[int, Any]) -> list[list[str]]:
    return [[str(key), normalise_value(values[key])] for key in sorted(values)]


def canonical_payload(record: SourceRecord) -> str:
    payload = {
        "fields": [[name, normalise_value(getattr(record, name))] for name in FINGERPRINT_FIELDS],
        "features": _sorted_pairs(record.features),
        "numeric": _sorted_pairs(record.numeric_data),
    }
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def fingerprint(record: SourceRecord) -> str:
    return hashlib.md5(canonical_payload(record).encode("utf-8")).hexdigest()


def contact_fingerprint(values: dict[str, Any]) -> str:
    canonical = json.dumps(
        {key: normalise_value(values[key]) for key in sorted(values)},
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()
