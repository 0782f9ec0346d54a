from __future__ import annotations

import itertools
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional

import msgspec

from .digests import hash_file, normalize_digest, parse_digest
from .errors import AlreadyInProgress, BudgetExceeded, DigestMismatch, InsufficientCacheSpace, PrefetchError
from .metrics import PrefetchMetrics
from .types import CacheEntry, EntryState

logger = logging.getLogger(__name__)

INDEX_VERSION = 1


class _IndexRecord(msgspec.Struct):
    size: int
    state: str
    last_access: float


class _IndexFile(msgspec.Struct):
    version: int = INDEX_VERSION
    entries: Dict[str, _IndexRecord] = msgspec.field(default_factory=dict)


def blob_path(root: Path, digest: str) -> Path:
    algo, hx = parse_digest(digest)
    return root / "blobs" / algo / hx[:2] / hx[2:4] / hx


def staging_path(root: Path, digest: str) -> Path:
    algo, hx = parse_digest(digest)
    return root / "staging" / algo / f"{hx}.part"


@dataclass(frozen=True)
class CacheStats:
    total_bytes: int
    reserved_bytes: int
    budget_bytes: int
    entries: Dict[str, int]


class CacheHandle:
    """A counted reference to a Ready blob. Release exactly once."""

    def __init__(self, digest: str, path: Path) -> None:
        self.digest = digest
        self.path = path
        self.released = False

    def __repr__(self) -> str:
        return f"CacheHandle({self.digest!r}, released={self.released})"


class BlobWriter:
    """
    Exclusive writer for one digest, handed out by CacheStore.begin_write.

    Bytes go to a staging file; they only become visible through
    CacheStore.commit, which verifies the digest first.
    """

    def __init__(self, store: "CacheStore", digest: str, expected_size: int, writer_id: int) -> None:
        self._store = store
        self.digest = digest
        self.algo = parse_digest(digest)[0]
        self.expected_size = int(expected_size)
        self.writer_id = writer_id
        self.staging = staging_path(store.root, digest)
        self.closed = False

    @property
    def offset(self) -> int:
        """Bytes already staged; a resumed fetch continues from here."""
        try:
            return self.staging.stat().st_size
        except FileNotFoundError:
            return 0

    def open(self, offset: int) -> BinaryIO:
        """Open the staging file for writing at `offset` (0 truncates)."""
        if self.closed:
            raise PrefetchError("writer already closed", digest=self.digest)
        self.staging.parent.mkdir(parents=True, exist_ok=True)
        if offset == 0:
            return open(self.staging, "wb")
        if offset != self.offset:
            raise PrefetchError(f"cannot resume at {offset}, staged {self.offset}", digest=self.digest)
        return open(self.staging, "ab")

    def reset(self) -> None:
        self.staging.unlink(missing_ok=True)

    def mark_downloading(self) -> None:
        self._store._mark_downloading(self)


class CacheStore:
    """
    Content-addressable on-disk blob store with refcounts and LRU eviction.

    Layout under `root`:
      - index.json                               digest -> {size, state, last_access}
      - blobs/<algo>/<aa>/<bb>/<hex>             committed, verified blobs
      - staging/<algo>/<hex>.part                in-progress downloads

    The index lock guards entries and size accounting only; hashing, file
    writes and unlinks happen outside it.
    """

    def __init__(
        self,
        root: Path,
        *,
        budget_bytes: int,
        eviction_policy: str = "eager",
        max_aborts: int = 3,
        verify_on_load: bool = False,
        metrics: Optional[PrefetchMetrics] = None,
    ) -> None:
        self.root = Path(root)
        self.budget_bytes = int(budget_bytes)
        self.eviction_policy = eviction_policy
        self.max_aborts = max(1, int(max_aborts))
        self.metrics = metrics or PrefetchMetrics()
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._abort_counts: Dict[str, int] = {}
        self._total = 0
        self._reserved = 0
        self._writer_ids = itertools.count(1)
        (self.root / "blobs").mkdir(parents=True, exist_ok=True)
        (self.root / "staging").mkdir(parents=True, exist_ok=True)
        self._load(verify=verify_on_load)

    @property
    def index_path(self) -> Path:
        return self.root / "index.json"

    def blob_path(self, digest: str) -> Path:
        return blob_path(self.root, digest)

    # ---- queries ----

    def lookup(self, digest: str) -> Optional[EntryState]:
        digest = normalize_digest(digest)
        with self._lock:
            e = self._entries.get(digest)
            return e.state if e is not None else None

    def entry(self, digest: str) -> Optional[CacheEntry]:
        digest = normalize_digest(digest)
        with self._lock:
            e = self._entries.get(digest)
            return replace(e) if e is not None else None

    def total_bytes(self) -> int:
        with self._lock:
            return self._total

    def stats(self) -> CacheStats:
        with self._lock:
            counts: Dict[str, int] = {s.value: 0 for s in EntryState}
            for e in self._entries.values():
                counts[e.state.value] += 1
            return CacheStats(
                total_bytes=self._total,
                reserved_bytes=self._reserved,
                budget_bytes=self.budget_bytes,
                entries=counts,
            )

    # ---- references ----

    def acquire(self, digest: str) -> Optional[CacheHandle]:
        """Pin a Ready blob. Returns None on a miss."""
        digest = normalize_digest(digest)
        with self._lock:
            e = self._entries.get(digest)
            if e is None or e.state != EntryState.READY:
                hit = False
            else:
                e.refcount += 1
                e.last_access = time.time()
                hit = True
        if not hit:
            self.metrics.record_miss()
            return None
        self.metrics.record_hit()
        return CacheHandle(digest, self.blob_path(digest))

    def release(self, handle: CacheHandle) -> None:
        if handle.released:
            raise ValueError(f"handle for {handle.digest} already released")
        with self._lock:
            e = self._entries.get(handle.digest)
            if e is None or e.refcount <= 0:
                raise PrefetchError("release without matching acquire", digest=handle.digest)
            e.refcount -= 1
        handle.released = True

    @contextmanager
    def pinned(self, digest: str) -> Iterator[Optional[CacheHandle]]:
        handle = self.acquire(digest)
        try:
            yield handle
        finally:
            if handle is not None:
                self.release(handle)

    def open_blob(self, handle: CacheHandle) -> BinaryIO:
        if handle.released:
            raise ValueError(f"handle for {handle.digest} already released")
        return open(handle.path, "rb")

    # ---- writes ----

    def begin_write(self, digest: str, expected_size: int) -> BlobWriter:
        """
        Claim the per-digest write slot.

        Raises AlreadyInProgress if the digest is cached, being written, or
        being evicted. Under the eager policy admission may evict LRU
        entries first; BudgetExceeded means space cannot be made right now.
        """
        digest = normalize_digest(digest)
        expected_size = max(0, int(expected_size))
        victims: List[CacheEntry] = []
        with self._lock:
            e = self._entries.get(digest)
            if e is not None and e.state != EntryState.FAILED:
                raise AlreadyInProgress(f"{digest} is {e.state.value}", digest=digest)
            if e is not None:
                # Re-admitting a Failed entry starts a fresh abort count.
                self._abort_counts.pop(digest, None)
            if self.eviction_policy == "eager":
                if expected_size > self.budget_bytes:
                    raise InsufficientCacheSpace(
                        f"{digest} ({expected_size} bytes) exceeds cache budget {self.budget_bytes}",
                        digest=digest,
                    )
                target = self.budget_bytes - self._reserved - expected_size
                if self._total > target:
                    need = self._total - target
                    evictable = sum(x.size for x in self._entries.values() if x.evictable())
                    if evictable < need:
                        raise BudgetExceeded(
                            f"need {need} bytes for {digest}, only {evictable} evictable",
                            needed=need,
                            available=evictable,
                        )
                    victims = self._select_victims_locked(target)
            writer_id = next(self._writer_ids)
            self._entries[digest] = CacheEntry(
                digest=digest,
                size=expected_size,
                state=EntryState.PENDING,
                writer_id=writer_id,
                aborts=self._abort_counts.get(digest, 0),
            )
            self._reserved += expected_size
        if victims:
            self._reclaim(victims)
        return BlobWriter(self, digest, expected_size, writer_id)

    def _mark_downloading(self, writer: BlobWriter) -> None:
        with self._lock:
            e = self._owned_locked(writer)
            e.state = EntryState.DOWNLOADING

    def commit(self, writer: BlobWriter) -> CacheEntry:
        """Verify the staged bytes and publish them. DigestMismatch leaves the writer open for abort."""
        with self._lock:
            self._owned_locked(writer)
        got = hash_file(writer.staging, writer.algo)
        if got != writer.digest:
            raise DigestMismatch(writer.digest, got)
        size = writer.staging.stat().st_size
        if writer.expected_size and size != writer.expected_size:
            logger.warning(f"{writer.digest}: declared size {writer.expected_size}, stored {size}")
        dst = self.blob_path(writer.digest)
        dst.parent.mkdir(parents=True, exist_ok=True)
        os.replace(writer.staging, dst)
        with self._lock:
            e = self._owned_locked(writer)
            self._reserved -= writer.expected_size
            e.state = EntryState.READY
            e.size = size
            e.last_access = time.time()
            e.writer_id = None
            e.aborts = 0
            self._abort_counts.pop(writer.digest, None)
            self._total += size
            out = replace(e)
        writer.closed = True
        self._persist()
        logger.debug(f"committed {writer.digest} ({size} bytes)")
        return out

    def abort(self, writer: BlobWriter) -> None:
        """Discard staged bytes and give up the write slot."""
        if writer.closed:
            return
        # Unlink while still owning the slot so a new writer never loses its file.
        writer.reset()
        with self._lock:
            e = self._owned_locked(writer)
            self._reserved -= writer.expected_size
            aborts = self._abort_counts.get(writer.digest, 0) + 1
            self._abort_counts[writer.digest] = aborts
            if aborts >= self.max_aborts:
                del self._abort_counts[writer.digest]
                e.state = EntryState.FAILED
                e.writer_id = None
                e.aborts = aborts
                e.size = 0
            else:
                del self._entries[writer.digest]
        writer.closed = True
        logger.debug(f"aborted write of {writer.digest} (aborts={aborts})")

    def _owned_locked(self, writer: BlobWriter) -> CacheEntry:
        e = self._entries.get(writer.digest)
        if writer.closed or e is None or e.writer_id != writer.writer_id:
            raise PrefetchError("writer no longer owns this digest", digest=writer.digest)
        return e

    # ---- eviction ----

    def evict(self, budget_bytes: Optional[int] = None) -> List[str]:
        """
        Remove refcount-0 Ready entries in LRU order until stored bytes fit
        `budget_bytes` (default: the store budget). Raises BudgetExceeded if
        the remaining entries are all pinned or in flight.
        """
        budget = self.budget_bytes if budget_bytes is None else int(budget_bytes)
        with self._lock:
            victims = self._select_victims_locked(budget)
            over = self._total - budget
        if victims:
            self._reclaim(victims)
        if over > 0:
            raise BudgetExceeded(f"cache holds {over} bytes over budget {budget} with nothing evictable", needed=over)
        return [v.digest for v in victims]

    def _select_victims_locked(self, target: int) -> List[CacheEntry]:
        if self._total <= target:
            return []
        victims: List[CacheEntry] = []
        candidates = sorted((e for e in self._entries.values() if e.evictable()), key=lambda e: e.last_access)
        for e in candidates:
            if self._total <= target:
                break
            e.state = EntryState.EVICTED
            self._total -= e.size
            victims.append(e)
        return victims

    def _reclaim(self, victims: List[CacheEntry]) -> None:
        for e in victims:
            self.blob_path(e.digest).unlink(missing_ok=True)
            self.metrics.record_eviction(e.size)
            logger.info(f"evicted {e.digest} ({e.size} bytes)")
        with self._lock:
            for e in victims:
                cur = self._entries.get(e.digest)
                if cur is e and cur.state == EntryState.EVICTED and cur.refcount == 0:
                    del self._entries[e.digest]
        self._persist()

    # ---- persistence ----

    def _persist(self) -> None:
        with self._persist_lock:
            with self._lock:
                doc = _IndexFile(
                    entries={
                        d: _IndexRecord(size=e.size, state=e.state.value, last_access=e.last_access)
                        for d, e in self._entries.items()
                        if e.state == EntryState.READY
                    }
                )
            tmp = self.index_path.with_suffix(".json.tmp")
            with open(tmp, "wb") as f:
                f.write(msgspec.json.encode(doc))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.index_path)

    def _load(self, *, verify: bool) -> None:
        if not self.index_path.exists():
            return
        try:
            doc = msgspec.json.decode(self.index_path.read_bytes(), type=_IndexFile)
        except msgspec.DecodeError as e:
            logger.warning(f"ignoring unreadable cache index {self.index_path}: {e}")
            return
        if doc.version != INDEX_VERSION:
            logger.warning(f"ignoring cache index with unsupported version {doc.version}")
            return
        dropped = 0
        for digest, rec in doc.entries.items():
            if rec.state != EntryState.READY.value:
                dropped += 1
                continue
            try:
                digest = normalize_digest(digest)
                path = self.blob_path(digest)
                size = path.stat().st_size
            except (PrefetchError, OSError):
                dropped += 1
                logger.warning(f"dropping cache index entry {digest}: blob missing")
                continue
            if size != rec.size or (verify and hash_file(path, parse_digest(digest)[0]) != digest):
                dropped += 1
                logger.warning(f"dropping cache index entry {digest}: blob failed verification")
                path.unlink(missing_ok=True)
                continue
            self._entries[digest] = CacheEntry(
                digest=digest, size=rec.size, state=EntryState.READY, last_access=rec.last_access
            )
            self._total += rec.size
        logger.info(f"loaded cache index: {len(self._entries)} blobs, {self._total} bytes")
        if dropped:
            self._persist()
