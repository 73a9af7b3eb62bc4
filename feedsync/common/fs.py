"""Filesystem helpers."""

from __future__ import annotations

import json
import time
from pathlib import Path


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def read_yaml(path: Path):
    import yaml

    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def write_json(path: Path, payload) -> None:
    ensure_dir(path.parent)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, sort_keys=True)
        f.write("\n")
    tmp_path.replace(path)


def read_json(path: Path):
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def remove_older_than(directory: Path, max_age_seconds: float, *, keep: Path | None = None) -> list[Path]:
    if not directory.exists():
        return []
    cutoff = time.time() - max_age_seconds
    removed: list[Path] = []
    for path in sorted(directory.iterdir()):
        if not path.is_file() or (keep is not None and path == keep):
            continue
        if path.stat().st_mtime < cutoff:
            path.unlink()
            removed.append(path)
    return removed
