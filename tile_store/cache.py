from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from common.errors import CacheCorruption
from common.types import CacheEntry
from common.utils import parse_iso8601
from tile_store.formats import DEFAULT_MIN_SIZE, describe_invalid, looks_valid, normalize_format


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TileQuery:
    """The logical request a cached blob answers."""
    ra_deg: float
    dec_deg: float
    width: int
    height: int
    source: str
    fmt: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ra": round(float(self.ra_deg), 6),
            "dec": round(float(self.dec_deg), 6),
            "width": int(self.width),
            "height": int(self.height),
            "survey": self.source,
            "format": normalize_format(self.fmt),
        }


class TileCache:
    """
    Content-addressed tile store on disk.

        root/
          ├─ metadata.json        (key -> query params, timestamps, access count, size)
          └─ {key[:2]}/
              └─ {key}.{ext}      (tile payload)

    metadata.json is read once at open and rewritten whole (temp file +
    os.replace) on every mutation, after the blob itself is on disk; a crash
    can leave an orphan blob but never an entry without its blob.
    """

    METADATA_NAME = "metadata.json"

    def __init__(
        self,
        root: str = "data/tile_cache",
        *,
        min_size: int = DEFAULT_MIN_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.root = Path(root).expanduser()
        self.metadata_path = self.root / self.METADATA_NAME
        self.min_size = int(min_size)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, CacheEntry] = {}
        self._meta_lock = threading.RLock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self.corrupt_evictions = 0
        self._load()

    # -------- public API --------

    @staticmethod
    def key_for(query: TileQuery) -> str:
        raw = json.dumps(query.to_dict(), sort_keys=True, ensure_ascii=False).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def path_for(self, key: str, fmt: str) -> Path:
        return self.root / key[:2] / f"{key}.{normalize_format(fmt)}"

    def lock_for(self, key: str) -> threading.Lock:
        """Per-key lock; hold it across a check-then-fetch-then-put sequence."""
        with self._meta_lock:
            lk = self._key_locks.get(key)
            if lk is None:
                lk = threading.Lock()
                self._key_locks[key] = lk
            return lk

    def contains(self, key: str) -> bool:
        with self._meta_lock:
            entry = self._entries.get(key)
        return entry is not None and self._abs(entry).is_file()

    def get(self, key: str) -> Optional[bytes]:
        """
        Cached bytes, or None on a miss. A blob that fails validation is
        treated as corrupt: entry and file are dropped and None is returned.
        Every hit bumps lastAccess and accessCount by one.
        """
        with self._meta_lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        try:
            data = self._read_validated(entry)
        except CacheCorruption as e:
            log.warning("Dropping corrupt cache entry: %s", e, extra={"extra": e.context})
            self._drop(key)
            with self._meta_lock:
                self.corrupt_evictions += 1
            return None

        with self._meta_lock:
            entry.last_access_at = self._now_iso()
            entry.access_count += 1
            self._flush()
        log.debug("Cache hit", extra={"extra": {"key": key, "accessCount": entry.access_count}})
        return data

    def put(self, key: str, data: bytes, query: TileQuery, *, object_name: str = "") -> CacheEntry:
        """
        Store `data` under `key` and upsert its metadata; durable on return.
        Refuses blobs that would not pass the read-side validation.
        """
        if not looks_valid(data, query.fmt, self.min_size):
            raise CacheCorruption("refusing to cache invalid blob", key=key,
                                  reason=describe_invalid(data, query.fmt, self.min_size))
        path = self.path_for(key, query.fmt)
        path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write_bytes(path, data)

        now = self._now_iso()
        q = query.to_dict()
        if object_name:
            q["objectName"] = object_name
        with self._meta_lock:
            prev = self._entries.get(key)
            entry = CacheEntry(
                key=key,
                path=path.relative_to(self.root).as_posix(),
                created_at=prev.created_at if prev else now,
                last_access_at=now,
                access_count=(prev.access_count + 1) if prev else 1,
                size_bytes=len(data),
                query=q,
            )
            self._entries[key] = entry
            self._flush()
        log.debug("Cached tile", extra={"extra": {"key": key, "size": len(data)}})
        return entry

    def evict_older_than(self, max_age: timedelta) -> List[str]:
        """Remove entries (blob + metadata) whose lastAccess is older than `max_age`."""
        cutoff = self._clock() - max_age
        removed: List[str] = []
        with self._meta_lock:
            for key, entry in list(self._entries.items()):
                try:
                    last = parse_iso8601(entry.last_access_at)
                except ValueError:
                    last = datetime.min.replace(tzinfo=timezone.utc)
                if last < cutoff:
                    self._unlink(entry)
                    del self._entries[key]
                    removed.append(key)
            if removed:
                self._flush()
        if removed:
            log.info("Evicted old cache entries", extra={"extra": {"count": len(removed), "max_age_s": max_age.total_seconds()}})
        return removed

    def clear(self) -> int:
        with self._meta_lock:
            n = len(self._entries)
            for entry in self._entries.values():
                self._unlink(entry)
            self._entries.clear()
            self._flush()
        log.info("Cache cleared", extra={"extra": {"count": n}})
        return n

    def entries(self) -> List[CacheEntry]:
        with self._meta_lock:
            return list(self._entries.values())

    def entry(self, key: str) -> Optional[CacheEntry]:
        with self._meta_lock:
            return self._entries.get(key)

    def stats(self) -> Dict[str, Any]:
        with self._meta_lock:
            entries = list(self._entries.values())
        accesses = sorted(e.last_access_at for e in entries)
        return {
            "root": str(self.root),
            "entries": len(entries),
            "total_bytes": sum(e.size_bytes for e in entries),
            "oldest_access": accesses[0] if accesses else None,
            "newest_access": accesses[-1] if accesses else None,
            "corrupt_evictions": self.corrupt_evictions,
        }

    def close(self) -> None:
        with self._meta_lock:
            if self._entries or self.metadata_path.exists():
                self._flush()

    def __enter__(self) -> "TileCache":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------- internals --------

    def _now_iso(self) -> str:
        return self._clock().astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def _abs(self, entry: CacheEntry) -> Path:
        p = Path(entry.path)
        return p if p.is_absolute() else self.root / p

    def _read_validated(self, entry: CacheEntry) -> bytes:
        path = self._abs(entry)
        fmt = str(entry.query.get("format") or path.suffix.lstrip("."))
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise CacheCorruption("cached blob missing", key=entry.key, path=str(path)) from None
        if not looks_valid(data, fmt, self.min_size):
            raise CacheCorruption("cached blob failed validation", key=entry.key, path=str(path),
                                  reason=describe_invalid(data, fmt, self.min_size))
        return data

    def _drop(self, key: str) -> None:
        with self._meta_lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return
            self._unlink(entry)
            self._flush()

    def _unlink(self, entry: CacheEntry) -> None:
        try:
            self._abs(entry).unlink()
        except FileNotFoundError:
            pass

    def _load(self) -> None:
        self._entries.clear()
        if not self.metadata_path.exists():
            return
        try:
            doc = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            bad = self.metadata_path.with_name(self.METADATA_NAME + ".corrupt")
            log.error("Unreadable cache metadata; starting empty", extra={"extra": {"path": str(self.metadata_path), "moved_to": str(bad), "error": str(e)}})
            os.replace(self.metadata_path, bad)
            return
        if not isinstance(doc, dict):
            return
        for key, d in doc.items():
            try:
                self._entries[key] = CacheEntry.from_dict(key, d)
            except (KeyError, ValueError, TypeError):
                log.warning("Skipping malformed cache record", extra={"extra": {"key": key}})
                continue

    def _flush(self) -> None:
        doc = {k: e.to_dict() for k, e in sorted(self._entries.items())}
        self.root.mkdir(parents=True, exist_ok=True)
        _atomic_write_bytes(self.metadata_path, json.dumps(doc, indent=2, ensure_ascii=False).encode("utf-8"))


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with tmp.open("wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
