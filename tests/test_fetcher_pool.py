from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from typing import Any, Tuple

from layer_prefetch.cache_store import CacheStore, blob_path
from layer_prefetch.errors import (
    Canceled,
    DigestMismatch,
    InsufficientCacheSpace,
    NotFound,
    RegistryTimeout,
    RegistryUnavailable,
    RetriesExhausted,
    TaskTimeout,
)
from layer_prefetch.fetcher import LayerFetcherPool, backoff_delays
from layer_prefetch.image_refs import parse_image_ref
from layer_prefetch.testing import FakeRegistry
from layer_prefetch.testing.fake_registry import CORRUPT, IGNORE_RANGE, NOT_FOUND, TRUNCATE, UNAVAILABLE
from layer_prefetch.types import EntryState, TaskState

SRC = parse_image_ref("ghcr.io/org/app:1")


def _pool(tmp_path: Path, reg: FakeRegistry, budget: int = 1 << 24, **kw: Any) -> Tuple[CacheStore, LayerFetcherPool]:
    store = CacheStore(tmp_path / "cache", budget_bytes=budget)
    opts = dict(
        concurrency_limit=2,
        max_attempts=3,
        backoff_base_s=0.001,
        backoff_cap_s=0.01,
        admission_poll_s=0.01,
    )
    opts.update(kw)
    return store, LayerFetcherPool(store, reg, **opts)  # type: ignore[arg-type]


async def _until(cond: Any, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not cond():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def test_backoff_delays_double_and_cap() -> None:
    assert list(itertools.islice(backoff_delays(0.5, 3.0), 5)) == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_fetch_commits_verified_blob(tmp_path: Path) -> None:
    reg = FakeRegistry(chunk_size=7)
    desc = reg.add_blob(b"some layer bytes" * 10)
    store, pool = _pool(tmp_path, reg)

    async def run() -> None:
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert r.ok
        assert r.state == TaskState.READY
        assert r.attempts == 1
        assert r.bytes_transferred == desc.size
        assert not r.cache_hit

    asyncio.run(run())
    assert store.lookup(desc.digest) == EntryState.READY
    assert blob_path(store.root, desc.digest).read_bytes() == reg.blobs[desc.digest]
    assert store.metrics.bytes_transferred == desc.size


def test_concurrent_requests_share_one_download(tmp_path: Path) -> None:
    reg = FakeRegistry(chunk_size=4)
    desc = reg.add_blob(b"fan-in" * 50)
    store, pool = _pool(tmp_path, reg, concurrency_limit=4)

    async def run() -> None:
        async with pool:
            futs = [pool.schedule(desc, SRC, job_id=f"job-{i}") for i in range(5)]
            assert all(f is futs[0] for f in futs)
            assert pool.task(desc.digest).job_ids == {f"job-{i}" for i in range(5)}
            results = await asyncio.gather(*futs)
        assert all(r.ok for r in results)

    asyncio.run(run())
    assert reg.blob_calls[desc.digest] == 1


def test_cached_layer_is_a_hit(tmp_path: Path) -> None:
    reg = FakeRegistry()
    desc = reg.add_blob(b"already here")
    store, pool = _pool(tmp_path, reg)

    async def run() -> None:
        async with pool:
            await pool.schedule(desc, SRC)
            r = await pool.schedule(desc, SRC)
        assert r.ok
        assert r.cache_hit

    asyncio.run(run())
    assert reg.blob_calls[desc.digest] == 1


def test_digest_mismatch_refetches_from_scratch(tmp_path: Path) -> None:
    reg = FakeRegistry()
    desc = reg.add_blob(b"integrity matters" * 20)
    reg.fail_blob(desc.digest, CORRUPT)
    store, pool = _pool(tmp_path, reg)

    async def run() -> None:
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert r.ok
        assert r.attempts == 2

    asyncio.run(run())
    assert reg.offsets[desc.digest] == [0, 0]
    assert store.lookup(desc.digest) == EntryState.READY
    assert store.metrics.retries == 1


def test_persistent_mismatch_fails_after_max_attempts(tmp_path: Path) -> None:
    reg = FakeRegistry()
    desc = reg.add_blob(b"always wrong")
    reg.fail_blob(desc.digest, CORRUPT, CORRUPT, CORRUPT)
    store, pool = _pool(tmp_path, reg, max_attempts=3)

    async def run() -> None:
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert not r.ok
        assert r.state == TaskState.FAILED
        assert r.attempts == 3
        assert isinstance(r.error, RetriesExhausted)
        assert isinstance(r.error.last_error, DigestMismatch)

    asyncio.run(run())
    assert reg.blob_calls[desc.digest] == 3
    assert store.lookup(desc.digest) == EntryState.FAILED
    assert store.acquire(desc.digest) is None


def test_truncated_stream_resumes_with_range(tmp_path: Path) -> None:
    data = bytes(range(256)) * 40
    reg = FakeRegistry(chunk_size=512)
    desc = reg.add_blob(data)
    reg.fail_blob(desc.digest, TRUNCATE)
    store, pool = _pool(tmp_path, reg)

    async def run() -> None:
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert r.ok
        assert r.bytes_transferred == len(data)

    asyncio.run(run())
    assert reg.offsets[desc.digest] == [0, len(data) // 2]
    assert blob_path(store.root, desc.digest).read_bytes() == data


def test_ignored_range_restarts_from_zero(tmp_path: Path) -> None:
    data = b"abcdefgh" * 128
    reg = FakeRegistry(chunk_size=100)
    desc = reg.add_blob(data)
    reg.fail_blob(desc.digest, TRUNCATE, IGNORE_RANGE)
    store, pool = _pool(tmp_path, reg)

    async def run() -> None:
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert r.ok

    asyncio.run(run())
    assert reg.offsets[desc.digest] == [0, len(data) // 2]
    assert blob_path(store.root, desc.digest).read_bytes() == data


def test_transient_errors_exhaust_retries(tmp_path: Path) -> None:
    reg = FakeRegistry()
    desc = reg.add_blob(b"unlucky")
    reg.fail_blob(desc.digest, UNAVAILABLE, UNAVAILABLE)
    store, pool = _pool(tmp_path, reg, max_attempts=2)

    async def run() -> None:
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert isinstance(r.error, RetriesExhausted)
        assert isinstance(r.error.last_error, RegistryUnavailable)
        assert r.attempts == 2

    asyncio.run(run())
    assert store.lookup(desc.digest) is None


def test_not_found_is_not_retried(tmp_path: Path) -> None:
    reg = FakeRegistry()
    desc = reg.add_blob(b"gone")
    reg.fail_blob(desc.digest, NOT_FOUND)
    store, pool = _pool(tmp_path, reg, max_attempts=5)

    async def run() -> None:
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert isinstance(r.error, NotFound)
        assert r.attempts == 1

    asyncio.run(run())
    assert reg.blob_calls[desc.digest] == 1
    assert store.metrics.layer_records()[-1].error_kind == "not_found"


def test_concurrency_limit_bounds_streams(tmp_path: Path) -> None:
    reg = FakeRegistry(chunk_size=8, chunk_delay_s=0.001)
    descs = [reg.add_blob(bytes([i]) * 64) for i in range(6)]
    store, pool = _pool(tmp_path, reg, concurrency_limit=2)

    async def run() -> None:
        async with pool:
            results = await asyncio.gather(*(pool.schedule(d, SRC) for d in descs))
        assert all(r.ok for r in results)

    asyncio.run(run())
    assert reg.max_active_streams == 2


def test_higher_priority_served_first(tmp_path: Path) -> None:
    reg = FakeRegistry()
    blocker = reg.add_blob(b"blocker")
    low = reg.add_blob(b"low")
    high = reg.add_blob(b"high")
    store, pool = _pool(tmp_path, reg, concurrency_limit=1)

    async def run() -> None:
        gate = reg.hold(blocker.digest)
        async with pool:
            f0 = pool.schedule(blocker, SRC)
            await _until(lambda: pool.task_state(blocker.digest) == TaskState.DOWNLOADING)
            f1 = pool.schedule(low, SRC, priority=0)
            f2 = pool.schedule(high, SRC, priority=10)
            gate.set()
            await asyncio.gather(f0, f1, f2)

    asyncio.run(run())
    assert list(reg.blob_calls) == [blocker.digest, high.digest, low.digest]


def test_cancel_job_stops_unshared_tasks(tmp_path: Path) -> None:
    reg = FakeRegistry()
    solo = reg.add_blob(b"only job one wants this")
    shared = reg.add_blob(b"both jobs want this")
    store, pool = _pool(tmp_path, reg)

    async def run() -> None:
        gate = reg.hold(solo.digest)
        async with pool:
            f_solo = pool.schedule(solo, SRC, job_id="one")
            f_shared = pool.schedule(shared, SRC, job_id="one")
            pool.schedule(shared, SRC, job_id="two")
            await _until(lambda: pool.task_state(solo.digest) == TaskState.DOWNLOADING)
            assert pool.cancel_job("one") == 1
            r_solo = await f_solo
            r_shared = await f_shared
            assert isinstance(r_solo.error, Canceled)
            assert r_shared.ok
            gate.set()

    asyncio.run(run())
    assert store.lookup(solo.digest) is None
    assert store.lookup(shared.digest) == EntryState.READY


def test_schedule_after_cancel_starts_fresh_task(tmp_path: Path) -> None:
    reg = FakeRegistry()
    layer = reg.add_blob(b"first job gives up, second job still wants it")
    store, pool = _pool(tmp_path, reg)

    async def run() -> Any:
        gate = reg.hold(layer.digest)
        async with pool:
            f_a = pool.schedule(layer, SRC, job_id="a")
            await _until(lambda: pool.task_state(layer.digest) == TaskState.DOWNLOADING)
            assert pool.cancel_job("a") == 1
            # Scheduled before the canceled runner has unwound.
            f_b = pool.schedule(layer, SRC, job_id="b")
            assert f_b is not f_a
            gate.set()
            return await f_a, await f_b

    r_a, r_b = asyncio.run(run())
    assert isinstance(r_a.error, Canceled)
    assert r_b.ok, r_b.error
    assert store.lookup(layer.digest) == EntryState.READY
    assert blob_path(tmp_path / "cache", layer.digest).read_bytes() == reg.blobs[layer.digest]


def test_blob_larger_than_budget_fails_fast(tmp_path: Path) -> None:
    reg = FakeRegistry()
    desc = reg.add_blob(b"x" * 64)
    store, pool = _pool(tmp_path, reg, budget=32)

    async def run() -> None:
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert isinstance(r.error, InsufficientCacheSpace)

    asyncio.run(run())
    assert reg.blob_calls[desc.digest] == 0


def test_admission_evicts_then_gives_up_when_pinned(tmp_path: Path) -> None:
    reg = FakeRegistry()
    a = reg.add_blob(b"a" * 40)
    b = reg.add_blob(b"b" * 40)
    c = reg.add_blob(b"c" * 40)
    store, pool = _pool(tmp_path, reg, budget=100, admission_timeout_s=0.05)

    async def run() -> None:
        async with pool:
            assert (await pool.schedule(a, SRC)).ok
            assert (await pool.schedule(b, SRC)).ok
            # Admitting c evicts the LRU entry a.
            assert (await pool.schedule(c, SRC)).ok
            assert store.lookup(a.digest) is None
            assert store.total_bytes() <= 100

            with store.pinned(b.digest), store.pinned(c.digest):
                r = await pool.schedule(a, SRC)
            assert isinstance(r.error, InsufficientCacheSpace)

    asyncio.run(run())
    assert store.metrics.evictions == 1


def test_attempt_timeout_is_retryable(tmp_path: Path) -> None:
    reg = FakeRegistry()
    desc = reg.add_blob(b"slow")
    store, pool = _pool(tmp_path, reg, max_attempts=2, attempt_timeout_s=0.05)

    async def run() -> None:
        reg.hold(desc.digest)
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert isinstance(r.error, RetriesExhausted)
        assert isinstance(r.error.last_error, RegistryTimeout)

    asyncio.run(run())
    assert reg.blob_calls[desc.digest] == 2


def test_task_timeout(tmp_path: Path) -> None:
    reg = FakeRegistry()
    desc = reg.add_blob(b"stuck")
    store, pool = _pool(tmp_path, reg, task_timeout_s=0.05)

    async def run() -> None:
        reg.hold(desc.digest)
        async with pool:
            r = await pool.schedule(desc, SRC)
        assert isinstance(r.error, TaskTimeout)

    asyncio.run(run())
    assert store.lookup(desc.digest) is None


def test_resize_changes_parallelism(tmp_path: Path) -> None:
    reg = FakeRegistry(chunk_size=8, chunk_delay_s=0.001)
    descs = [reg.add_blob(bytes([i]) * 64) for i in range(8)]
    store, pool = _pool(tmp_path, reg, concurrency_limit=1)

    async def run() -> None:
        async with pool:
            pool.resize(4)
            results = await asyncio.gather(*(pool.schedule(d, SRC) for d in descs))
        assert all(r.ok for r in results)

    asyncio.run(run())
    assert 1 < reg.max_active_streams <= 4
