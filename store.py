"""File metadata and config entries, persisted as one JSON snapshot.

The in-memory state is authoritative. Every flush writes the whole state to
a temporary file next to the snapshot and renames it over the old one, so
the file on disk is always a complete snapshot.
"""
import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

from loguru import logger

import naming
from config import FLUSH_INTERVAL, default_config
from errors import InvalidTTL, StorageIOError

DEFAULT_MAX_TTL = 8760


def validate_ttl(ttl, max_ttl: int = DEFAULT_MAX_TTL) -> int:
    if isinstance(ttl, bool):
        raise InvalidTTL(ttl, max_ttl)
    try:
        value = int(ttl)
    except (TypeError, ValueError):
        raise InvalidTTL(ttl, max_ttl) from None
    if isinstance(ttl, float) and ttl != value:
        raise InvalidTTL(ttl, max_ttl)
    if not 1 <= value <= max_ttl:
        raise InvalidTTL(ttl, max_ttl)
    return value


@dataclass(frozen=True)
class FileRecord:
    relative_path: str
    original_name: str
    size_bytes: int
    uploaded_at: float
    expires_at: float
    ttl_hours: int
    source_address: str = ""
    generated_name: str = ""
    id: int = 0

    @classmethod
    def create(cls, relative_path: str, original_name: str, size_bytes: int, ttl_hours,
               source_address: str = "", now: float = None,
               max_ttl: int = DEFAULT_MAX_TTL) -> "FileRecord":
        """Build a record for a file that was just written.

        Raises InvalidTTL when ``ttl_hours`` is outside ``[1, max_ttl]``.
        """
        ttl = validate_ttl(ttl_hours, max_ttl)
        now = time.time() if now is None else now
        return cls(
            relative_path  = relative_path,
            generated_name = PurePosixPath(relative_path).name,
            original_name  = original_name,
            size_bytes     = int(size_bytes),
            uploaded_at    = now,
            expires_at     = now + ttl * 3600,
            ttl_hours      = ttl,
            source_address = source_address,
        )

    @property
    def date(self) -> str:
        return naming.date_from_path(self.relative_path)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "FileRecord":
        return cls(**{f.name: data[f.name] for f in fields(cls) if f.name in data})


class ReadWriteLock:
    """Shared readers, exclusive writer. Waiting writers hold off new readers.

    Not reentrant.
    """

    def __init__(self):
        self._cond            = threading.Condition(threading.Lock())
        self._readers         = 0
        self._writer          = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if not self._readers:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class MetadataStore:
    """Owns every FileRecord and config entry of one server.

    Build it with :meth:`open`; pass the instance to whatever needs it.
    Mutations mark the state dirty and wake the background flusher, which
    also checks every ``flush_interval`` seconds, so a failed write is
    retried on the next tick.
    """

    def __init__(self, path, clock=time.time):
        self.path  = Path(path)
        self.clock = clock

        self._lock       = ReadWriteLock()
        self._flush_lock = threading.Lock()
        self._files: Dict[int, FileRecord] = {}
        self._config: Dict[str, str] = {}
        self._next_id = 1

        self._version       = 0
        self._saved_version = 0

        self._wake    = threading.Event()
        self._stop    = threading.Event()
        self._flusher: Optional[threading.Thread] = None

    # ─────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────
    @classmethod
    def open(cls, path, defaults: dict = None, clock=time.time,
             flush_interval: Optional[float] = FLUSH_INTERVAL) -> "MetadataStore":
        """Load the snapshot at ``path`` or start a new one.

        A new store is seeded with ``defaults`` (``config.default_config()``
        when omitted) and written to disk before this returns. Config keys
        added to the defaults since the snapshot was written are filled in;
        existing values are never touched.

        With ``flush_interval=None`` no background flusher runs and state
        reaches disk only through :meth:`flush` or :meth:`close`.

        Raises StorageIOError when the directory cannot be created or the
        snapshot cannot be parsed. A corrupt snapshot is left as it is.
        """
        store = cls(path, clock=clock)
        try:
            store.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"cannot create metadata directory {store.path.parent}: {e}") from e

        store._discard_temp_files()
        existed = store.path.exists()
        if existed:
            store._load()

        seeded = 0
        for key, value in (default_config() if defaults is None else defaults).items():
            if key not in store._config:
                store._config[key] = str(value)
                seeded += 1
        if seeded or not existed:
            store._version += 1
            store.flush()
            logger.info(f"Metadata store initialised at {store.path} ({seeded} default config entries)")
        else:
            logger.info(f"Metadata store loaded from {store.path} ({len(store._files)} files)")

        if flush_interval is not None:
            store.start_flusher(flush_interval)
        return store

    def start_flusher(self, interval: float = FLUSH_INTERVAL):
        if self._flusher is not None:
            return
        self._stop.clear()
        self._flusher = threading.Thread(target=self._flush_loop, args=(interval,),
                                         name="metadata-flush", daemon=True)
        self._flusher.start()

    def close(self):
        """Stop the flusher and write any pending state.

        Raises StorageIOError if the final write fails.
        """
        self._stop.set()
        self._wake.set()
        if self._flusher is not None:
            self._flusher.join()
            self._flusher = None
        self.flush()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ─────────────────────────────────────────────────────────
    # PERSISTENCE
    # ─────────────────────────────────────────────────────────
    @property
    def dirty(self) -> bool:
        return self._version != self._saved_version

    def flush(self) -> bool:
        """Write the current state to disk if it changed since the last write.

        Returns True when a snapshot was written. Raises StorageIOError.
        """
        with self._flush_lock:
            with self._lock.read():
                version = self._version
                if version == self._saved_version:
                    return False
                snapshot = {
                    "files":   {str(fid): rec.to_dict() for fid, rec in self._files.items()},
                    "next_id": self._next_id,
                    "config":  dict(self._config),
                }
            self._write_atomic(json.dumps(snapshot, indent=2, ensure_ascii=False))
            self._saved_version = version
            logger.debug(f"Metadata snapshot written ({len(snapshot['files'])} files)")
            return True

    def _write_atomic(self, payload: str):
        try:
            fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp",
                                       dir=self.path.parent)
        except OSError as e:
            raise StorageIOError(f"cannot create temporary snapshot in {self.path.parent}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise StorageIOError(f"cannot write metadata snapshot {self.path}: {e}") from e

    def _flush_loop(self, interval: float):
        while not self._stop.is_set():
            self._wake.wait(interval)
            self._wake.clear()
            try:
                self.flush()
            except StorageIOError as e:
                logger.error(f"Metadata flush failed, retrying in {interval:.0f}s: {e}")

    def _load(self):
        try:
            raw     = json.loads(self.path.read_text(encoding="utf-8"))
            files   = {int(fid): FileRecord.from_dict(rec) for fid, rec in raw.get("files", {}).items()}
            next_id = int(raw.get("next_id", 1))
            config  = {str(k): str(v) for k, v in raw.get("config", {}).items()}
        except (OSError, ValueError, TypeError, AttributeError) as e:
            raise StorageIOError(f"cannot load metadata snapshot {self.path}: {e}") from e

        self._files   = {fid: replace(rec, id=fid) for fid, rec in files.items()}
        self._next_id = max([next_id] + [fid + 1 for fid in files])
        self._config  = config

    def _discard_temp_files(self):
        for tmp in self.path.parent.glob(f".{self.path.name}.*.tmp"):
            logger.warning(f"Removing leftover snapshot from an interrupted flush: {tmp}")
            tmp.unlink(missing_ok=True)

    def _changed(self):
        # caller holds the write lock
        self._version += 1
        self._wake.set()

    # ─────────────────────────────────────────────────────────
    # FILES
    # ─────────────────────────────────────────────────────────
    def insert_file(self, record: FileRecord) -> int:
        with self._lock.write():
            file_id = self._next_id
            self._next_id += 1
            self._files[file_id] = replace(record, id=file_id)
            self._changed()
        return file_id

    def get_file_by_id(self, file_id: int) -> Optional[FileRecord]:
        with self._lock.read():
            return self._files.get(file_id)

    def get_file_by_path(self, relative_path: str) -> Optional[FileRecord]:
        with self._lock.read():
            for rec in self._files.values():
                if rec.relative_path == relative_path:
                    return rec
        return None

    def delete_file_by_path(self, relative_path: str) -> bool:
        """Drop every record stored under ``relative_path``. Absent is not an error."""
        with self._lock.write():
            doomed = [fid for fid, rec in self._files.items() if rec.relative_path == relative_path]
            for fid in doomed:
                del self._files[fid]
            if doomed:
                self._changed()
        return bool(doomed)

    def list_expired(self, now: float = None) -> List[FileRecord]:
        now = self.clock() if now is None else now
        with self._lock.read():
            expired = [rec for rec in self._files.values() if rec.expires_at < now]
        return sorted(expired, key=lambda r: (r.expires_at, r.id))

    def list_by_date_prefix(self, date: str) -> List[FileRecord]:
        prefix = date.rstrip("/") + "/"
        with self._lock.read():
            found = [rec for rec in self._files.values()
                     if rec.relative_path.replace("\\", "/").startswith(prefix)]
        return sorted(found, key=lambda r: r.relative_path)

    def list_dates(self) -> List[str]:
        with self._lock.read():
            return sorted({rec.date for rec in self._files.values()})

    def stats(self) -> Tuple[int, int]:
        with self._lock.read():
            return len(self._files), sum(rec.size_bytes for rec in self._files.values())

    # ─────────────────────────────────────────────────────────
    # CONFIG
    # ─────────────────────────────────────────────────────────
    def get_config(self, key: str, default: str = None) -> Optional[str]:
        with self._lock.read():
            return self._config.get(key, default)

    def get_config_int(self, key: str, default: int = 0) -> int:
        value = self.get_config(key)
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def set_config(self, key: str, value):
        with self._lock.write():
            self._config[key] = str(value)
            self._changed()

    def get_all_config(self) -> Dict[str, str]:
        with self._lock.read():
            return dict(self._config)
