"""
cleanup.py — removes expired files.

Runs inside the server as a background thread (``ExpirySweeper.start``), or
once from the command line:
  filehost cleanup
"""
import errno
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from loguru import logger

import naming
from errors import PartialCleanupFailure


def human_size(n: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if n < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} TB"


def _delete_physical(storage_root: Path, relative_path: str) -> Optional[int]:
    """Delete the stored bytes. Returns the size freed, None if already gone."""
    try:
        full = naming.storage_path(storage_root, relative_path)
    except ValueError:
        raise PartialCleanupFailure(relative_path, OSError(errno.EACCES, "path outside storage root"))
    try:
        size = full.stat().st_size
        os.remove(full)
    except FileNotFoundError:
        return None
    except OSError as e:
        raise PartialCleanupFailure(relative_path, e) from e
    return size


def remove_empty_dir(storage_root: Path, relative_path: str) -> bool:
    date = naming.date_from_path(relative_path)
    if not date or date == relative_path:
        return False
    try:
        os.rmdir(Path(storage_root) / date)
    except FileNotFoundError:
        return False
    except OSError as e:
        if e.errno in (errno.ENOTEMPTY, errno.EEXIST):
            return False
        logger.warning(f"Could not remove directory {date}: {e}")
        return False
    logger.debug(f"Removed empty directory {date}")
    return True


def remove_stored_file(store, storage_root: Path, relative_path: str) -> Optional[int]:
    """Delete a stored file and then its metadata.

    A file that is already missing still has its record dropped. Any other
    failure raises PartialCleanupFailure and keeps the record. Returns the
    bytes freed, or None when no record exists for ``relative_path``.
    """
    record = store.get_file_by_path(relative_path)
    if record is None:
        return None
    freed = _delete_physical(storage_root, relative_path)
    store.delete_file_by_path(relative_path)
    remove_empty_dir(storage_root, relative_path)
    if freed is None:
        logger.info(f"Dropped metadata for missing file {relative_path}")
        return 0
    logger.info(f"Deleted file: {relative_path} (original: {record.original_name}, "
                f"size: {human_size(freed)})")
    return freed


# ─────────────────────────────────────────────────────────────
# SWEEPER
# ─────────────────────────────────────────────────────────────
class SweepState(Enum):
    IDLE     = "idle"
    SWEEPING = "sweeping"


@dataclass
class SweepResult:
    removed: int = 0
    freed_bytes: int = 0
    failed: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "removed":     self.removed,
            "freed_bytes": self.freed_bytes,
            "freed":       human_size(self.freed_bytes),
            "failed":      self.failed,
            "skipped":     self.skipped,
        }


class ExpirySweeper:
    """Deletes files whose TTL has run out.

    At most one sweep runs at a time. A timer tick that finds a sweep in
    progress is skipped; a manual ``run_once`` waits for it instead.
    Records whose file cannot be deleted (other than already missing) are
    kept and retried on the next sweep.
    """

    def __init__(self, store, storage_root, clock=time.time):
        self.store        = store
        self.storage_root = Path(storage_root)
        self.clock        = clock

        self._sweep_lock = threading.Lock()
        self._stop       = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.state       = SweepState.IDLE
        self.last_result: Optional[SweepResult] = None

    def start(self, interval: float):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, args=(interval,),
                                        name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Cleanup sweeper started (interval: {interval:.0f}s)")

    def stop(self, timeout: float = None) -> bool:
        """Stop the timer. Blocks until an in-flight sweep has finished.

        Returns False if ``timeout`` ran out first.
        """
        self._stop.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Cleanup sweeper still running after stop timeout")
            return False
        self._thread = None
        logger.info("Cleanup sweeper stopped")
        return True

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, interval: float):
        while not self._stop.is_set():
            try:
                self.sweep(blocking=False)
            except Exception:
                logger.exception("Cleanup sweep crashed")
            self._stop.wait(interval)

    def run_once(self, now: float = None) -> SweepResult:
        return self.sweep(now=now, blocking=True)

    def sweep(self, now: float = None, blocking: bool = True) -> SweepResult:
        if not self._sweep_lock.acquire(blocking=blocking):
            logger.info("Cleanup already in progress; skipping this tick")
            return SweepResult(skipped=True)
        try:
            self.state = SweepState.SWEEPING
            result = self._sweep(self.clock() if now is None else now)
            self.last_result = result
            return result
        finally:
            self.state = SweepState.IDLE
            self._sweep_lock.release()

    def _sweep(self, now: float) -> SweepResult:
        result  = SweepResult()
        expired = self.store.list_expired(now)
        if not expired:
            logger.debug("No expired files to clean up")
            return result

        logger.info(f"Starting cleanup of {len(expired)} expired file(s)")
        for record in expired:
            try:
                freed = _delete_physical(self.storage_root, record.relative_path)
            except PartialCleanupFailure as e:
                result.failed += 1
                logger.error(f"Keeping metadata for {record.relative_path}, will retry: {e.cause}")
                continue

            if freed is not None:
                result.freed_bytes += freed
            remove_empty_dir(self.storage_root, record.relative_path)
            if not self.store.delete_file_by_path(record.relative_path):
                # removed by a DELETE request after the expiry scan
                continue
            result.removed += 1
            logger.info(f"Deleted expired file: {record.relative_path} "
                        f"(original: {record.original_name}, size: {record.size_bytes} bytes)")

        logger.info(f"Cleanup complete: deleted {result.removed} files, "
                    f"freed {human_size(result.freed_bytes)}, {result.failed} failed")
        return result
