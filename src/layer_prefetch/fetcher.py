from __future__ import annotations

import asyncio
import errno
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Dict, Generator, List, Optional, Tuple

import backoff

from .cache_store import BlobWriter, CacheStore
from .config import PrefetchConfig
from .errors import (
    AlreadyInProgress,
    BudgetExceeded,
    Canceled,
    DigestMismatch,
    InsufficientCacheSpace,
    PrefetchError,
    RegistryTimeout,
    RegistryUnavailable,
    RetriesExhausted,
    TaskTimeout,
)
from .image_refs import ImageReference
from .metrics import LayerFetchMetrics, PrefetchMetrics
from .registry import RegistryBackend
from .types import DownloadTask, EntryState, FetchResult, LayerDescriptor, TaskState

logger = logging.getLogger(__name__)

_BUSY_STATES = (EntryState.PENDING, EntryState.DOWNLOADING, EntryState.EVICTED)


def backoff_delays(base_s: float, cap_s: float) -> Generator[float, None, None]:
    """Exponential delays base, 2*base, 4*base, ... capped at cap_s (before jitter)."""
    gen = backoff.expo(base=2, factor=base_s, max_value=cap_s)
    next(gen)  # wait generators yield once before producing values
    return gen


@dataclass
class _Inflight:
    task: DownloadTask
    future: "asyncio.Future[FetchResult]"
    runner: Optional["asyncio.Task[FetchResult]"] = None
    started_at: float = 0.0


class LayerFetcherPool:
    """
    Bounded-concurrency layer downloader for one node.

    `schedule` returns a future per digest; concurrent requests for the same
    digest share it (fan-in). Higher `priority` values are served first,
    ties in arrival order. Futures resolve to FetchResult and never raise;
    a failed task carries its error in FetchResult.error.
    """

    def __init__(
        self,
        store: CacheStore,
        backend: RegistryBackend,
        *,
        concurrency_limit: int = 4,
        max_attempts: int = 5,
        backoff_base_s: float = 0.5,
        backoff_cap_s: float = 30.0,
        attempt_timeout_s: float = 300.0,
        task_timeout_s: float = 1800.0,
        admission_timeout_s: float = 60.0,
        admission_poll_s: float = 0.25,
        metrics: Optional[PrefetchMetrics] = None,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.backend = backend
        self.concurrency_limit = concurrency_limit
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self.attempt_timeout_s = attempt_timeout_s
        self.task_timeout_s = task_timeout_s
        self.admission_timeout_s = admission_timeout_s
        self.admission_poll_s = admission_poll_s
        self.metrics = metrics or store.metrics
        self._seq = itertools.count()
        self._tasks: Dict[str, _Inflight] = {}
        # Canceled tasks whose runner has not unwound yet; no longer joinable.
        self._stopping: List[_Inflight] = []
        self._queue: Optional["asyncio.PriorityQueue[Tuple[int, int, str]]"] = None
        self._workers: Dict[int, "asyncio.Task[None]"] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @classmethod
    def from_config(
        cls,
        store: CacheStore,
        backend: RegistryBackend,
        cfg: PrefetchConfig,
        metrics: Optional[PrefetchMetrics] = None,
    ) -> "LayerFetcherPool":
        return cls(
            store,
            backend,
            concurrency_limit=cfg.concurrency_limit,
            max_attempts=cfg.max_attempts,
            backoff_base_s=cfg.backoff_base_s,
            backoff_cap_s=cfg.backoff_cap_s,
            attempt_timeout_s=cfg.attempt_timeout_s,
            task_timeout_s=cfg.task_timeout_s,
            admission_timeout_s=cfg.admission_timeout_s,
            admission_poll_s=cfg.admission_poll_s,
            metrics=metrics,
        )

    # ---- public API ----

    def schedule(
        self,
        descriptor: LayerDescriptor,
        source: ImageReference,
        *,
        job_id: str = "",
        priority: int = 0,
    ) -> "asyncio.Future[FetchResult]":
        self._ensure_started()
        assert self._queue is not None
        inf = self._tasks.get(descriptor.digest)
        if inf is not None:
            inf.task.job_ids.add(job_id)
            if priority > inf.task.priority and inf.runner is None:
                # Requeue ahead; the stale queue entry is skipped by seq.
                inf.task.priority = priority
                inf.task.seq = next(self._seq)
                self._queue.put_nowait((-priority, inf.task.seq, descriptor.digest))
            return inf.future

        assert self._loop is not None
        task = DownloadTask(
            descriptor=descriptor,
            source=source,
            priority=priority,
            seq=next(self._seq),
            job_ids={job_id},
        )
        fut: "asyncio.Future[FetchResult]" = self._loop.create_future()
        self._tasks[descriptor.digest] = _Inflight(task=task, future=fut)
        self._queue.put_nowait((-priority, task.seq, descriptor.digest))
        logger.debug(f"queued {descriptor.digest} ({descriptor.size} bytes) from {source}")
        return fut

    def task_state(self, digest: str) -> Optional[TaskState]:
        inf = self._tasks.get(digest)
        return inf.task.state if inf is not None else None

    def task(self, digest: str) -> Optional[DownloadTask]:
        inf = self._tasks.get(digest)
        return inf.task if inf is not None else None

    def pending_count(self) -> int:
        return len(self._tasks)

    def cancel_job(self, job_id: str) -> int:
        """Drop `job_id`'s interest; cancel tasks nobody else is waiting on."""
        n = 0
        for inf in list(self._tasks.values()):
            if job_id not in inf.task.job_ids:
                continue
            inf.task.job_ids.discard(job_id)
            if not inf.task.job_ids:
                self._cancel(inf)
                n += 1
        if n:
            logger.info(f"canceled {n} download task(s) for job {job_id}")
        return n

    def resize(self, concurrency_limit: int) -> None:
        """Change the number of concurrent downloads. Running tasks are never interrupted."""
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        self.concurrency_limit = concurrency_limit
        if self._loop is not None and self._workers:
            self._spawn_workers()

    async def aclose(self) -> None:
        infs = list(self._tasks.values()) + self._stopping
        for inf in infs:
            self._cancel(inf)
        workers = list(self._workers.values())
        self._workers = {}
        for w in workers:
            w.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        runners = [inf.runner for inf in infs if inf.runner is not None]
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        for inf in infs:
            self._finish(inf, self._canceled_result(inf))
        self._queue = None
        self._loop = None

    async def __aenter__(self) -> "LayerFetcherPool":
        self._ensure_started()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    # ---- workers ----

    def _ensure_started(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is loop and self._workers:
            return
        self._loop = loop
        self._queue = asyncio.PriorityQueue()
        for inf in self._tasks.values():
            self._queue.put_nowait((-inf.task.priority, inf.task.seq, inf.task.digest))
        self._workers = {}
        self._spawn_workers()

    def _spawn_workers(self) -> None:
        assert self._loop is not None
        for i in range(self.concurrency_limit):
            w = self._workers.get(i)
            if w is None or w.done():
                self._workers[i] = self._loop.create_task(self._worker(i))

    def _cancel(self, inf: _Inflight) -> None:
        inf.task.canceled = True
        if inf.runner is not None:
            # A later schedule() of this digest starts a fresh task instead of joining this one.
            if self._tasks.get(inf.task.digest) is inf:
                del self._tasks[inf.task.digest]
                self._stopping.append(inf)
            inf.runner.cancel()
            return
        self._finish(inf, self._canceled_result(inf))

    def _canceled_result(self, inf: _Inflight) -> FetchResult:
        return FetchResult(
            digest=inf.task.digest,
            state=TaskState.FAILED,
            bytes_transferred=inf.task.bytes_transferred,
            attempts=inf.task.attempts,
            error=Canceled(f"{inf.task.digest}: canceled", digest=inf.task.digest),
        )

    async def _worker(self, idx: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            item = await queue.get()
            if idx >= self.concurrency_limit:
                # Shrunk by resize(); hand the item to a remaining worker.
                queue.put_nowait(item)
                if self._workers.get(idx) is asyncio.current_task():
                    del self._workers[idx]
                return
            _, seq, digest = item
            inf = self._tasks.get(digest)
            if inf is None or inf.task.seq != seq or inf.task.canceled or inf.runner is not None:
                continue
            inf.started_at = time.monotonic()
            inf.runner = asyncio.create_task(self._run_task(inf.task))
            try:
                await asyncio.wait({inf.runner})
            except asyncio.CancelledError:
                inf.runner.cancel()
                raise
            if inf.runner.cancelled():
                result = self._canceled_result(inf)
            else:
                result = inf.runner.result()
            self._finish(inf, result)

    def _finish(self, inf: _Inflight, result: FetchResult) -> None:
        if self._tasks.get(inf.task.digest) is inf:
            del self._tasks[inf.task.digest]
        self._stopping = [x for x in self._stopping if x is not inf]
        if inf.future.done():
            return
        inf.future.set_result(result)
        self.metrics.record_layer(
            LayerFetchMetrics(
                digest=result.digest,
                outcome="ready" if result.ok else ("canceled" if isinstance(result.error, Canceled) else "failed"),
                duration_ms=int(result.duration_s * 1000),
                bytes_transferred=result.bytes_transferred,
                attempts=result.attempts,
                cache_hit=result.cache_hit,
                error_kind=result.error.kind if result.error is not None else None,
            )
        )
        if result.ok:
            logger.info(f"layer {result.digest} ready ({result.bytes_transferred} bytes, {result.attempts} attempt(s))")
        elif not isinstance(result.error, Canceled):
            logger.warning(f"layer {result.digest} failed: {result.error}")

    # ---- one task ----

    async def _run_task(self, task: DownloadTask) -> FetchResult:
        started = time.monotonic()
        error: Optional[PrefetchError] = None
        cache_hit = False
        try:
            cache_hit = await asyncio.wait_for(self._fetch(task), timeout=self.task_timeout_s)
        except asyncio.TimeoutError:
            error = TaskTimeout(f"{task.digest}: not done after {self.task_timeout_s}s", digest=task.digest)
        except PrefetchError as e:
            error = e
        task.state = TaskState.FAILED if error is not None else TaskState.READY
        return FetchResult(
            digest=task.digest,
            state=task.state,
            cache_hit=cache_hit,
            bytes_transferred=task.bytes_transferred,
            attempts=task.attempts,
            duration_s=time.monotonic() - started,
            error=error,
        )

    async def _fetch(self, task: DownloadTask) -> bool:
        """Make `task.digest` Ready in the store. Returns True when no download was needed."""
        delays = backoff_delays(self.backoff_base_s, self.backoff_cap_s)
        writer: Optional[BlobWriter] = None
        try:
            while True:
                if writer is None:
                    with self.store.pinned(task.digest) as handle:
                        if handle is not None:
                            return task.attempts == 0
                    writer = await self._admit(task)
                    if writer is None:
                        await self._wait_for_other_writer(task)
                        continue

                task.attempts += 1
                err = await self._attempt(task, writer)
                if err is None:
                    writer = None
                    return False
                if isinstance(err, DigestMismatch):
                    # Resumption is invalid after a digest failure.
                    self.store.abort(writer)
                    writer = None
                if not err.retryable:
                    raise err
                if task.attempts >= self.max_attempts:
                    raise RetriesExhausted(
                        f"{task.digest}: gave up after {task.attempts} attempts: {err}",
                        digest=task.digest,
                        last_error=err,
                    ) from err

                delay = backoff.full_jitter(next(delays))
                task.state = TaskState.QUEUED
                task.next_retry_at = time.monotonic() + delay
                self.metrics.record_retry()
                logger.warning(
                    f"{task.digest}: attempt {task.attempts}/{self.max_attempts} failed ({err}); retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                task.next_retry_at = None
        finally:
            if writer is not None:
                self.store.abort(writer)

    async def _admit(self, task: DownloadTask) -> Optional[BlobWriter]:
        """Claim the write slot, waiting for eviction when over budget. None if another writer has it."""
        deadline = time.monotonic() + self.admission_timeout_s
        while True:
            try:
                return self.store.begin_write(task.digest, task.descriptor.size)
            except AlreadyInProgress:
                return None
            except BudgetExceeded as e:
                if time.monotonic() >= deadline:
                    raise InsufficientCacheSpace(
                        f"{task.digest}: no cache space after {self.admission_timeout_s}s ({e})",
                        digest=task.digest,
                    ) from e
                logger.debug(f"{task.digest}: waiting for cache space ({e})")
                await asyncio.sleep(self.admission_poll_s)

    async def _wait_for_other_writer(self, task: DownloadTask) -> None:
        while self.store.lookup(task.digest) in _BUSY_STATES:
            await asyncio.sleep(self.admission_poll_s)

    async def _attempt(self, task: DownloadTask, writer: BlobWriter) -> Optional[PrefetchError]:
        try:
            await asyncio.wait_for(self._stream_and_commit(task, writer), timeout=self.attempt_timeout_s)
            return None
        except asyncio.TimeoutError:
            return RegistryTimeout(f"{task.digest}: attempt timed out after {self.attempt_timeout_s}s", digest=task.digest)
        except PrefetchError as e:
            return e
        except OSError as e:
            if e.errno == errno.ENOSPC:
                return InsufficientCacheSpace(f"{task.digest}: disk full", digest=task.digest)
            return PrefetchError(f"{task.digest}: local i/o error: {e}", digest=task.digest)

    async def _stream_and_commit(self, task: DownloadTask, writer: BlobWriter) -> None:
        size = writer.expected_size
        offset = writer.offset
        if size and offset > size:
            writer.reset()
            offset = 0

        task.state = TaskState.DOWNLOADING
        writer.mark_downloading()
        if not (size and offset == size):
            async with self.backend.fetch_blob_range(task.source, task.digest, offset) as stream:
                start = stream.offset
                if start not in (0, offset):
                    raise RegistryUnavailable(f"{task.digest}: server answered from byte {start}, asked {offset}")
                if start != offset:
                    logger.debug(f"{task.digest}: range ignored, restarting from 0")
                written = start
                with writer.open(start) as f:
                    async for chunk in stream:
                        f.write(chunk)
                        written += len(chunk)
                        task.bytes_transferred += len(chunk)
                        self.metrics.record_bytes(len(chunk))
                        if size and written > size:
                            raise DigestMismatch(task.digest, f"<more than {size} bytes>")
            if size and written < size:
                raise RegistryUnavailable(f"{task.digest}: stream ended at {written}/{size} bytes", digest=task.digest)

        task.state = TaskState.VERIFYING
        self.store.commit(writer)
