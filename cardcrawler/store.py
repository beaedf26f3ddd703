from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import CorruptState
from .models import CrawlState, state_from_document, state_to_document, utc_now_iso

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "backup-"


def read_document(path: Path) -> Dict[str, Any]:
    """Parse one state document; raises CorruptState when it is unusable."""
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise CorruptState(str(path), str(exc)) from exc
    if not raw.strip():
        raise CorruptState(str(path), "empty file")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CorruptState(str(path), str(exc)) from exc
    if isinstance(payload, list):
        payload = {"records": payload}
    if not isinstance(payload, dict):
        raise CorruptState(str(path), "not a JSON object")
    return payload


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to a temp file in the same directory, fsync, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


class PersistentStore:
    """Single JSON document holding the crawl state, plus backup and snapshots."""

    def __init__(
        self,
        path: Path,
        backup_path: Optional[Path] = None,
        snapshot_dir: Optional[Path] = None,
        snapshot_every: int = 50,
        max_snapshots: int = 10,
        partition_order: Optional[Dict[str, int]] = None,
        default_partition: str = "1",
    ) -> None:
        self.path = Path(path)
        self.backup_path = Path(backup_path) if backup_path else self.path.with_suffix(".backup.json")
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else self.path.parent / "snapshots"
        self.snapshot_every = max(0, int(snapshot_every))
        self.max_snapshots = max(1, int(max_snapshots))
        self.partition_order = dict(partition_order or {})
        self.default_partition = default_partition
        self.save_count = 0
        self._save_lock = threading.Lock()
        self._snapshot_threads: List[threading.Thread] = []

    @classmethod
    def from_config(cls, config: Any) -> "PersistentStore":
        output_dir = Path(str(config.get("output_dir")))
        partitions = config.partitions
        return cls(
            path=output_dir / str(config.get("output_file")),
            backup_path=output_dir / str(config.get("backup_file")),
            snapshot_dir=output_dir / str(config.get("snapshot_dir")),
            snapshot_every=int(config.get("snapshot_every", 50)),
            max_snapshots=int(config.get("max_snapshots", 10)),
            partition_order=config.partition_order(),
            default_partition=partitions[0] if partitions else "1",
        )

    def load(self) -> CrawlState:
        """Load the primary document; CorruptState if it exists but cannot be parsed."""
        if not self.path.exists():
            return CrawlState()
        return self._load_path(self.path)

    def _load_path(self, path: Path) -> CrawlState:
        payload = read_document(path)
        try:
            return state_from_document(payload, self.default_partition)
        except ValueError as exc:
            raise CorruptState(str(path), str(exc)) from exc

    def candidates(self) -> List[Path]:
        """Primary, backup, then snapshots newest first."""
        paths = [self.path, self.backup_path]
        if self.snapshot_dir.exists():
            snapshots = sorted(
                self.snapshot_dir.glob(f"{SNAPSHOT_PREFIX}*.json"),
                key=lambda p: p.name,
                reverse=True,
            )
            paths.extend(snapshots)
        return [p for p in paths if p.exists()]

    def load_with_fallback(self, start_empty_on_corruption: bool = False) -> Tuple[CrawlState, Optional[Path]]:
        """Walk the backup chain; returns the state and the file it came from."""
        existing = self.candidates()
        if not existing:
            logger.info("no state document at %s, starting fresh", self.path)
            return CrawlState(), None
        errors: List[str] = []
        for path in existing:
            try:
                state = self._load_path(path)
            except CorruptState as exc:
                logger.warning("skipping unreadable state document: %s", exc)
                errors.append(str(exc))
                continue
            if path != self.path:
                logger.warning("primary state unreadable, resumed from %s", path)
            return state, path
        if not start_empty_on_corruption:
            raise CorruptState(str(self.path), "; ".join(errors))
        if self.path.exists():
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            aside = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
            os.replace(self.path, aside)
            logger.error("all state documents unreadable; moved primary aside to %s", aside)
        return CrawlState(), None

    def save(self, state: CrawlState) -> bool:
        """Atomically persist ``state``. Returns False when another save is in progress."""
        if not self._save_lock.acquire(blocking=False):
            logger.debug("save already in progress, skipping overlapping checkpoint")
            return False
        try:
            state.last_checkpoint_at = utc_now_iso()
            document = state_to_document(state, self.partition_order)
            write_json_atomic(self.path, document)
            self.save_count += 1
            self._copy_backup()
            if self.snapshot_every and self.save_count % self.snapshot_every == 0:
                self._start_snapshot()
            return True
        finally:
            self._save_lock.release()

    def _copy_backup(self) -> None:
        try:
            self.backup_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.backup_path.with_name(f".{self.backup_path.name}.tmp")
            shutil.copyfile(self.path, tmp)
            os.replace(tmp, self.backup_path)
        except OSError as exc:
            logger.warning("backup copy failed: %s", exc)

    def _start_snapshot(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.snapshot_dir / f"{SNAPSHOT_PREFIX}{stamp}.json"
        worker = threading.Thread(target=self._write_snapshot, args=(target,), name="snapshot", daemon=True)
        self._snapshot_threads = [t for t in self._snapshot_threads if t.is_alive()]
        self._snapshot_threads.append(worker)
        worker.start()

    def _write_snapshot(self, target: Path) -> None:
        # An open handle keeps reading the old inode if a later save renames over the canonical file.
        try:
            self.snapshot_dir.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.tmp")
            shutil.copyfile(self.path, tmp)
            os.replace(tmp, target)
            snapshots = sorted(self.snapshot_dir.glob(f"{SNAPSHOT_PREFIX}*.json"), key=lambda p: p.name)
            for stale in snapshots[: max(0, len(snapshots) - self.max_snapshots)]:
                stale.unlink()
        except OSError as exc:
            logger.warning("snapshot failed: %s", exc)

    def wait_for_snapshots(self, timeout: float = 5.0) -> None:
        for worker in list(self._snapshot_threads):
            worker.join(timeout)
