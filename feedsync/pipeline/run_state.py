"""File-backed progress slot, stop flag, run lock and run-result records."""

from __future__ import annotations

import time
from pathlib import Path

from feedsync.common.errors import RunInProgressError
from feedsync.common.fs import ensure_dir, read_json, write_json
from feedsync.common.models import ProgressSnapshot
from feedsync.common.time_utils import utc_timestamp_iso


class RunStateStore:
    def __init__(self, data_dir: Path, *, stale_lock_seconds: float = 7200.0) -> None:
        self.data_dir = data_dir
        self.state_dir = data_dir / "state"
        self.stale_lock_seconds = stale_lock_seconds

    @property
    def progress_path(self) -> Path:
        return self.state_dir / "progress.json"

    @property
    def stop_path(self) -> Path:
        return self.state_dir / "stop.flag"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "run.lock"

    @property
    def last_result_path(self) -> Path:
        return self.data_dir / "out" / "reports" / "last_run.json"

    def result_path(self, run_id: str) -> Path:
        return self.data_dir / "run_meta" / f"{run_id}.result.json"

    def write_progress(self, snapshot: ProgressSnapshot) -> None:
        payload = snapshot.to_dict()
        payload["updated_at"] = utc_timestamp_iso()
        write_json(self.progress_path, payload)

    def read_progress(self) -> dict | None:
        if not self.progress_path.exists():
            return None
        return read_json(self.progress_path)

    def clear_progress(self) -> None:
        self.progress_path.unlink(missing_ok=True)

    def request_stop(self) -> str | None:
        """Flag the run holding the lock to stop; returns its run id, or None when nothing is running."""
        holder = self.lock_holder()
        if holder is None:
            return None
        write_json(self.stop_path, {"run_id": holder, "requested_at": utc_timestamp_iso()})
        return holder

    def stop_requested(self, run_id: str | None = None) -> bool:
        if not self.stop_path.exists():
            return False
        if run_id is None:
            return True
        return read_json(self.stop_path).get("run_id") == run_id

    def clear_stop(self) -> None:
        self.stop_path.unlink(missing_ok=True)

    def _lock_is_stale(self) -> bool:
        age = time.time() - self.lock_path.stat().st_mtime
        return age > self.stale_lock_seconds

    def acquire_lock(self, run_id: str) -> bool:
        """Take the run lock; returns True when a stale lock was replaced."""
        ensure_dir(self.state_dir)
        replaced = False
        if self.lock_path.exists():
            if not self._lock_is_stale():
                holder = self.lock_path.read_text(encoding="utf-8").strip()
                raise RunInProgressError(f"Run already in progress: {holder}")
            self.lock_path.unlink(missing_ok=True)
            replaced = True
        try:
            with self.lock_path.open("x", encoding="utf-8") as f:
                f.write(run_id)
        except FileExistsError as exc:
            raise RunInProgressError("Run lock taken concurrently") from exc
        return replaced

    def release_lock(self, run_id: str) -> None:
        if not self.lock_path.exists():
            return
        if self.lock_path.read_text(encoding="utf-8").strip() == run_id:
            self.lock_path.unlink(missing_ok=True)

    def lock_holder(self) -> str | None:
        if not self.lock_path.exists():
            return None
        return self.lock_path.read_text(encoding="utf-8").strip()

    def write_result(self, run_id: str, payload: dict) -> Path:
        write_json(self.result_path(run_id), payload)
        write_json(self.last_result_path, payload)
        return self.last_result_path

    def read_last_result(self) -> dict | None:
        if not self.last_result_path.exists():
            return None
        return read_json(self.last_result_path)
