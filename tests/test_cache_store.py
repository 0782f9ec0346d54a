from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import List

import pytest

from layer_prefetch.cache_store import CacheHandle, CacheStore, blob_path
from layer_prefetch.digests import compute_digest, hash_file
from layer_prefetch.errors import (
    AlreadyInProgress,
    BudgetExceeded,
    DigestMismatch,
    InsufficientCacheSpace,
    PrefetchError,
)
from layer_prefetch.metrics import PrefetchMetrics
from layer_prefetch.types import EntryState


def _put(store: CacheStore, data: bytes) -> str:
    digest = compute_digest(data)
    w = store.begin_write(digest, len(data))
    with w.open(0) as f:
        f.write(data)
    store.commit(w)
    return digest


def test_commit_makes_blob_ready_and_addressable(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    data = b"layer-one" * 100
    digest = _put(store, data)

    assert store.lookup(digest) == EntryState.READY
    path = blob_path(tmp_path, digest)
    assert path.read_bytes() == data
    assert hash_file(path, "sha256") == digest
    assert path.relative_to(tmp_path).parts[:2] == ("blobs", "sha256")
    assert store.total_bytes() == len(data)

    with store.pinned(digest) as h:
        assert h is not None
        with store.open_blob(h) as f:
            assert f.read() == data


def test_digest_mismatch_keeps_blob_invisible(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    digest = compute_digest(b"expected")
    w = store.begin_write(digest, 8)
    with w.open(0) as f:
        f.write(b"tampered")
    with pytest.raises(DigestMismatch):
        store.commit(w)
    assert store.lookup(digest) == EntryState.PENDING
    assert store.acquire(digest) is None

    store.abort(w)
    assert store.lookup(digest) is None
    assert not w.staging.exists()
    assert not blob_path(tmp_path, digest).exists()


def test_single_writer_per_digest(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    digest = compute_digest(b"x")
    w = store.begin_write(digest, 1)
    with pytest.raises(AlreadyInProgress):
        store.begin_write(digest, 1)
    store.abort(w)
    w2 = store.begin_write(digest, 1)
    assert w2.writer_id != w.writer_id


def test_concurrent_begin_write_has_one_winner(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    digest = compute_digest(b"contended")
    winners: List[int] = []
    losers: List[int] = []
    barrier = threading.Barrier(8)

    def claim(i: int) -> None:
        barrier.wait()
        try:
            store.begin_write(digest, 9)
            winners.append(i)
        except AlreadyInProgress:
            losers.append(i)

    threads = [threading.Thread(target=claim, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(winners) == 1
    assert len(losers) == 7


def test_refcounts_and_double_release(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    digest = _put(store, b"shared")
    h1 = store.acquire(digest)
    h2 = store.acquire(digest)
    assert h1 is not None and h2 is not None
    assert store.entry(digest).refcount == 2
    store.release(h1)
    store.release(h2)
    assert store.entry(digest).refcount == 0
    with pytest.raises(ValueError):
        store.release(h1)


def test_evict_lru_respects_pins(tmp_path: Path) -> None:
    metrics = PrefetchMetrics()
    store = CacheStore(tmp_path, budget_bytes=1 << 20, metrics=metrics)
    a = _put(store, b"a" * 100)
    b = _put(store, b"b" * 100)
    c = _put(store, b"c" * 100)

    # a is least recently used but pinned; b goes first, then c.
    ha = store.acquire(a)
    evicted = store.evict(budget_bytes=100)
    assert evicted == [b, c]
    assert store.total_bytes() <= 100
    assert store.lookup(a) == EntryState.READY
    assert blob_path(tmp_path, a).exists()
    assert not blob_path(tmp_path, b).exists()
    assert metrics.evictions == 2
    assert metrics.evicted_bytes == 200

    with pytest.raises(BudgetExceeded):
        store.evict(budget_bytes=0)
    assert store.lookup(a) == EntryState.READY
    assert ha is not None
    store.release(ha)
    assert store.evict(budget_bytes=0) == [a]
    assert store.total_bytes() == 0


def test_eager_admission_evicts_lru(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=250)
    a = _put(store, b"a" * 100)
    b = _put(store, b"b" * 100)
    with store.pinned(b):
        pass  # b is now more recently used than a

    c = _put(store, b"c" * 100)
    assert store.lookup(a) is None
    assert store.lookup(b) == EntryState.READY
    assert store.lookup(c) == EntryState.READY
    assert store.total_bytes() <= 250


def test_admission_refused_when_everything_pinned(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=200)
    a = _put(store, b"a" * 100)
    b = _put(store, b"b" * 100)
    ha, hb = store.acquire(a), store.acquire(b)

    with pytest.raises(BudgetExceeded) as ei:
        store.begin_write(compute_digest(b"c" * 100), 100)
    assert ei.value.needed == 100
    assert ei.value.available == 0
    assert store.lookup(a) == EntryState.READY
    assert store.lookup(b) == EntryState.READY
    store.release(ha)
    store.release(hb)


def test_blob_larger_than_budget(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=10)
    with pytest.raises(InsufficientCacheSpace):
        store.begin_write(compute_digest(b"x" * 11), 11)


def test_lazy_policy_does_not_gate_admission(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=100, eviction_policy="lazy")
    a = _put(store, b"a" * 80)
    b = _put(store, b"b" * 80)
    assert store.total_bytes() == 160
    assert store.evict() == [a]
    assert store.lookup(b) == EntryState.READY


def test_repeated_aborts_mark_failed(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20, max_aborts=2)
    digest = compute_digest(b"flaky")
    store.abort(store.begin_write(digest, 5))
    assert store.lookup(digest) is None
    store.abort(store.begin_write(digest, 5))
    assert store.lookup(digest) == EntryState.FAILED
    # Failed entries may be written again.
    w = store.begin_write(digest, 5)
    with w.open(0) as f:
        f.write(b"flaky")
    store.commit(w)
    assert store.lookup(digest) == EntryState.READY


def test_readmitted_failed_entry_gets_fresh_abort_count(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20, max_aborts=2)
    digest = compute_digest(b"flaky")
    store.abort(store.begin_write(digest, 5))
    store.abort(store.begin_write(digest, 5))
    assert store.lookup(digest) == EntryState.FAILED

    w = store.begin_write(digest, 5)
    assert store.entry(digest).aborts == 0  # type: ignore[union-attr]
    store.abort(w)
    # One abort after re-admission is not enough to fail again.
    assert store.lookup(digest) is None


def test_release_unknown_handle_keeps_it_unreleased(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    digest = compute_digest(b"never stored")
    handle = CacheHandle(digest, blob_path(tmp_path, digest))
    with pytest.raises(PrefetchError):
        store.release(handle)
    assert handle.released is False


def test_writer_resume_offset(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    data = b"0123456789"
    digest = compute_digest(data)
    w = store.begin_write(digest, len(data))
    with w.open(0) as f:
        f.write(data[:4])
    assert w.offset == 4
    with pytest.raises(PrefetchError):
        w.open(2)
    with w.open(4) as f:
        f.write(data[4:])
    store.commit(w)
    assert store.lookup(digest) == EntryState.READY


def test_reload_index_after_restart(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    a = _put(store, b"persist-a")
    b = _put(store, b"persist-b")
    pending = compute_digest(b"in-flight")
    store.begin_write(pending, 9)

    doc = json.loads((tmp_path / "index.json").read_text())
    assert doc["version"] == 1
    assert set(doc["entries"]) == {a, b}

    blob_path(tmp_path, b).unlink()
    reopened = CacheStore(tmp_path, budget_bytes=1 << 20)
    assert reopened.lookup(a) == EntryState.READY
    assert reopened.lookup(b) is None
    assert reopened.lookup(pending) is None
    assert reopened.total_bytes() == len(b"persist-a")


def test_verify_on_load_drops_corrupt_blob(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1 << 20)
    a = _put(store, b"original!")
    blob_path(tmp_path, a).write_bytes(b"corrupted")  # same length

    trusting = CacheStore(tmp_path, budget_bytes=1 << 20)
    assert trusting.lookup(a) == EntryState.READY

    verifying = CacheStore(tmp_path, budget_bytes=1 << 20, verify_on_load=True)
    assert verifying.lookup(a) is None


def test_stats(tmp_path: Path) -> None:
    store = CacheStore(tmp_path, budget_bytes=1000)
    _put(store, b"z" * 10)
    store.begin_write(compute_digest(b"y"), 30)
    st = store.stats()
    assert st.total_bytes == 10
    assert st.reserved_bytes == 30
    assert st.budget_bytes == 1000
    assert st.entries["ready"] == 1
    assert st.entries["pending"] == 1
