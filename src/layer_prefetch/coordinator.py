from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import backoff

from .cache_store import CacheStore
from .config import PrefetchConfig
from .errors import BudgetExceeded, Canceled, PrefetchError, RegistryTimeout, RegistryUnavailable
from .fetcher import LayerFetcherPool
from .image_refs import ImageReference, parse_image_ref
from .manifest_resolver import ManifestResolver
from .metrics import PrefetchMetrics
from .registry import RegistryBackend, describe_backend
from .types import (
    EntryState,
    FetchResult,
    JobState,
    LayerDescriptor,
    LayerProgress,
    Manifest,
    PullJob,
    PullJobStatus,
    TaskState,
    dedupe_layers,
)

logger = logging.getLogger(__name__)

ImageLike = Union[ImageReference, str]


@dataclass
class _JobRecord:
    job: PullJob
    manifests: Dict[ImageReference, Manifest] = field(default_factory=dict)
    image_errors: Dict[ImageReference, PrefetchError] = field(default_factory=dict)
    layers: Dict[str, Tuple[LayerDescriptor, ImageReference]] = field(default_factory=dict)
    results: Dict[str, FetchResult] = field(default_factory=dict)
    subscribers: List["asyncio.Queue[PullJobStatus]"] = field(default_factory=list)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    runner: Optional["asyncio.Task[None]"] = None
    runs: int = 0


class NodeCoordinator:
    """
    Per-node reconciler.

    Given a desired image set, resolves manifests, takes the union of their
    layers (deduplicated by digest) and hands every layer not already Ready
    to the node's LayerFetcherPool. Progress is published as PullJobStatus
    snapshots to any number of watchers.
    """

    def __init__(
        self,
        node_id: str,
        store: CacheStore,
        pool: LayerFetcherPool,
        resolver: ManifestResolver,
        *,
        eviction_policy: str = "eager",
        resolve_attempts: int = 3,
        backoff_base_s: float = 0.5,
        backoff_cap_s: float = 30.0,
        progress_interval_s: float = 1.0,
        metrics: Optional[PrefetchMetrics] = None,
    ) -> None:
        self.node_id = node_id
        self.store = store
        self.pool = pool
        self.resolver = resolver
        self.eviction_policy = eviction_policy
        self.resolve_attempts = max(1, resolve_attempts)
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self.progress_interval_s = progress_interval_s
        self.metrics = metrics or store.metrics
        self._jobs: Dict[str, _JobRecord] = {}

    @classmethod
    def from_config(
        cls,
        node_id: str,
        backend: RegistryBackend,
        cfg: PrefetchConfig,
        *,
        metrics: Optional[PrefetchMetrics] = None,
    ) -> "NodeCoordinator":
        metrics = metrics or PrefetchMetrics()
        store = CacheStore(
            cfg.cache_dir,
            budget_bytes=cfg.cache_size_budget,
            eviction_policy=cfg.eviction_policy,
            max_aborts=cfg.max_attempts,
            verify_on_load=cfg.verify_on_load,
            metrics=metrics,
        )
        pool = LayerFetcherPool.from_config(store, backend, cfg, metrics=metrics)
        resolver = ManifestResolver.from_config(backend, cfg)
        logger.info(
            f"node {node_id}: cache {cfg.cache_dir} budget={cfg.cache_size_budget} "
            f"concurrency={cfg.concurrency_limit} backend={describe_backend(backend)}"
        )
        return cls(
            node_id,
            store,
            pool,
            resolver,
            eviction_policy=cfg.eviction_policy,
            resolve_attempts=cfg.max_attempts,
            backoff_base_s=cfg.backoff_base_s,
            backoff_cap_s=cfg.backoff_cap_s,
            metrics=metrics,
        )

    # ---- public API ----

    def submit(
        self,
        images: Iterable[ImageLike],
        *,
        job_id: Optional[str] = None,
        priority: int = 0,
    ) -> PullJob:
        refs = tuple(_as_ref(i) for i in images)
        job_id = job_id or uuid.uuid4().hex[:12]
        if job_id in self._jobs:
            raise ValueError(f"job {job_id} already exists on node {self.node_id}")
        job = PullJob(node_id=self.node_id, images=refs, job_id=job_id, priority=priority)
        rec = _JobRecord(job=job)
        self._jobs[job_id] = rec
        rec.runner = asyncio.create_task(self._run(rec, refs, ()))
        logger.info(f"node {self.node_id}: job {job_id} submitted ({len(refs)} image(s))")
        return job

    async def reconcile_stream(
        self,
        images: Iterable[ImageLike],
        *,
        job_id: Optional[str] = None,
        priority: int = 0,
        cache_size_budget: Optional[int] = None,
        concurrency_limit: Optional[int] = None,
    ) -> AsyncIterator[PullJobStatus]:
        """Submit a job and yield its status snapshots, ending with the terminal one."""
        if cache_size_budget is not None:
            self.store.budget_bytes = int(cache_size_budget)
        if concurrency_limit is not None:
            self.pool.resize(concurrency_limit)
        job = self.submit(images, job_id=job_id, priority=priority)
        async for st in self.watch(job.job_id):
            yield st

    async def reconcile(self, images: Iterable[ImageLike], **kwargs: object) -> PullJobStatus:
        last: Optional[PullJobStatus] = None
        async for st in self.reconcile_stream(images, **kwargs):  # type: ignore[arg-type]
            last = st
        assert last is not None
        return last

    async def watch(self, job_id: str) -> AsyncIterator[PullJobStatus]:
        rec = self._record(job_id)
        q: "asyncio.Queue[PullJobStatus]" = asyncio.Queue()
        rec.subscribers.append(q)
        try:
            st = self._status(rec)
            yield st
            if rec.done.is_set():
                return
            while True:
                st = await q.get()
                yield st
                if st.state.terminal:
                    return
        finally:
            rec.subscribers.remove(q)

    def status(self, job_id: str) -> PullJobStatus:
        return self._status(self._record(job_id))

    async def wait(self, job_id: str) -> PullJobStatus:
        rec = self._record(job_id)
        await rec.done.wait()
        return self._status(rec)

    async def retry_failed(self, job_id: str) -> PullJobStatus:
        """Re-run only the failed part of a finished job; Ready layers are not fetched again."""
        rec = self._record(job_id)
        if not rec.done.is_set():
            raise PrefetchError(f"job {job_id} is still running")
        failed = [d for d, r in rec.results.items() if not r.ok]
        for d in failed:
            del rec.results[d]
        images = tuple(r for r in rec.job.images if r not in rec.manifests)
        logger.info(f"node {self.node_id}: retrying job {job_id}: {len(failed)} layer(s), {len(images)} image(s)")
        rec.done.clear()
        rec.runner = asyncio.create_task(self._run(rec, images, failed))
        return await self.wait(job_id)

    def cancel(self, job_id: str) -> None:
        """Stop a job. Downloads shared with other active jobs keep running."""
        rec = self._record(job_id)
        if rec.done.is_set():
            return
        self.pool.cancel_job(job_id)
        if rec.runner is not None:
            rec.runner.cancel()

    def jobs(self) -> List[PullJob]:
        return [rec.job for rec in self._jobs.values()]

    async def aclose(self) -> None:
        runners = [rec.runner for rec in self._jobs.values() if rec.runner is not None and not rec.runner.done()]
        for rec in self._jobs.values():
            if not rec.done.is_set():
                self.pool.cancel_job(rec.job.job_id)
        for r in runners:
            r.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        await self.pool.aclose()

    # ---- job execution ----

    def _record(self, job_id: str) -> _JobRecord:
        rec = self._jobs.get(job_id)
        if rec is None:
            raise KeyError(f"unknown job {job_id} on node {self.node_id}")
        return rec

    async def _run(self, rec: _JobRecord, images: Sequence[ImageReference], retry_digests: Sequence[str]) -> None:
        rec.runs += 1
        rec.job.state = JobState.IN_PROGRESS
        self._publish(rec)
        futures: Dict[str, "asyncio.Future[FetchResult]"] = {}
        try:
            await asyncio.gather(*(self._resolve(rec, ref) for ref in images))
            known = set(rec.layers)
            for desc, src in dedupe_layers([rec.manifests[r] for r in images if r in rec.manifests]):
                rec.layers.setdefault(desc.digest, (desc, src))
            fresh = [d for d in rec.layers if d not in known]
            futures = self._submit_layers(rec, list(retry_digests) + fresh)
            await self._drain(rec, futures)
        except asyncio.CancelledError:
            self._settle(rec, futures, f"job {rec.job.job_id} canceled")
            logger.info(f"node {self.node_id}: job {rec.job.job_id} canceled")
            self._finish(rec, stopped=True)
            raise
        except Exception as e:
            logger.exception(f"node {self.node_id}: job {rec.job.job_id} crashed: {e}")
            self._settle(rec, futures, f"job {rec.job.job_id} stopped: {e}")
            self._finish(rec, stopped=True)
            return
        self._finish(rec)

    def _settle(self, rec: _JobRecord, futures: Dict[str, "asyncio.Future[FetchResult]"], reason: str) -> None:
        """Give every layer without a result one, so retry_failed picks it up again."""
        for d in rec.layers:
            if d in rec.results:
                continue
            f = futures.get(d)
            if f is not None and f.done():
                rec.results[d] = f.result()
            elif self.store.lookup(d) == EntryState.READY:
                rec.results[d] = FetchResult(digest=d, state=TaskState.READY)
            else:
                rec.results[d] = FetchResult(
                    digest=d,
                    state=TaskState.FAILED,
                    error=Canceled(f"{d}: {reason}", digest=d),
                )

    async def _resolve(self, rec: _JobRecord, ref: ImageReference) -> None:
        resolve = backoff.on_exception(
            backoff.expo,
            (RegistryUnavailable, RegistryTimeout),
            max_tries=self.resolve_attempts,
            jitter=backoff.full_jitter,
            logger=logger,
            factor=self.backoff_base_s,
            max_value=self.backoff_cap_s,
        )(self.resolver.resolve)
        try:
            rec.manifests[ref] = await resolve(ref)
            rec.image_errors.pop(ref, None)
        except PrefetchError as e:
            logger.warning(f"node {self.node_id}: job {rec.job.job_id}: cannot resolve {ref}: {e}")
            rec.image_errors[ref] = e

    def _submit_layers(self, rec: _JobRecord, digests: Sequence[str]) -> Dict[str, "asyncio.Future[FetchResult]"]:
        futures: Dict[str, "asyncio.Future[FetchResult]"] = {}
        for d in digests:
            desc, src = rec.layers[d]
            if self.store.lookup(d) == EntryState.READY:
                rec.results[d] = FetchResult(digest=d, state=TaskState.READY, cache_hit=True)
                continue
            futures[d] = self.pool.schedule(desc, src, job_id=rec.job.job_id, priority=rec.job.priority)
        logger.debug(
            f"node {self.node_id}: job {rec.job.job_id}: {len(futures)} layer(s) to fetch, "
            f"{len(digests) - len(futures)} already cached"
        )
        return futures

    async def _drain(self, rec: _JobRecord, futures: Dict[str, "asyncio.Future[FetchResult]"]) -> None:
        pending = {asyncio.ensure_future(f) for f in futures.values()}
        self._publish(rec)
        while pending:
            done, pending = await asyncio.wait(
                pending, timeout=self.progress_interval_s, return_when=asyncio.FIRST_COMPLETED
            )
            for f in done:
                r = f.result()
                rec.results[r.digest] = r
            self._publish(rec)

    def _finish(self, rec: _JobRecord, *, stopped: bool = False) -> None:
        p = self._progress(rec)
        failures = p.failed + len(rec.image_errors)
        if stopped or p.pending or p.in_flight:
            state = JobState.FAILED if p.ready == 0 else JobState.PARTIAL_FAILURE
        elif failures == 0:
            state = JobState.READY
        elif p.ready == 0:
            state = JobState.FAILED
        else:
            state = JobState.PARTIAL_FAILURE
        rec.job.state = state
        self.metrics.record_job(rec.job.job_id, state.value)
        if self.eviction_policy == "lazy":
            try:
                self.store.evict()
            except BudgetExceeded as e:
                logger.warning(f"node {self.node_id}: cache over budget after job {rec.job.job_id}: {e}")
        rec.done.set()
        self._publish(rec)
        logger.info(
            f"node {self.node_id}: job {rec.job.job_id} {state.value} "
            f"(ready={p.ready} failed={p.failed} image_errors={len(rec.image_errors)})"
        )

    def _publish(self, rec: _JobRecord) -> None:
        st = self._status(rec)
        for q in rec.subscribers:
            q.put_nowait(st)

    def _progress(self, rec: _JobRecord) -> LayerProgress:
        pending = in_flight = ready = failed = 0
        for d in rec.layers:
            r = rec.results.get(d)
            if r is not None:
                if r.ok:
                    ready += 1
                else:
                    failed += 1
                continue
            if rec.done.is_set():
                failed += 1
            elif self.pool.task_state(d) in (TaskState.DOWNLOADING, TaskState.VERIFYING):
                in_flight += 1
            else:
                pending += 1
        return LayerProgress(pending=pending, in_flight=in_flight, ready=ready, failed=failed)

    def _status(self, rec: _JobRecord) -> PullJobStatus:
        return PullJobStatus(
            job_id=rec.job.job_id,
            node_id=self.node_id,
            state=rec.job.state,
            progress=self._progress(rec),
            failed_digests=tuple(d for d, r in rec.results.items() if not r.ok),
            image_errors={ref.canonical(): str(e) for ref, e in rec.image_errors.items()},
        )


def _as_ref(image: ImageLike) -> ImageReference:
    if isinstance(image, ImageReference):
        return image
    return parse_image_ref(image)
