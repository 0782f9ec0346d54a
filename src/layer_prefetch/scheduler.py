from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import backoff

from .config import PrefetchConfig
from .coordinator import NodeCoordinator
from .fetcher import backoff_delays
from .types import JobState, LayerProgress, PullJob, PullJobStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CampaignHandle:
    campaign_id: str
    jobs: Tuple[PullJob, ...]


@dataclass(frozen=True)
class CampaignStatus:
    campaign_id: str
    state: JobState
    jobs: Mapping[str, PullJobStatus]
    attempts: Mapping[str, int]
    permanently_failed: Tuple[str, ...] = ()

    def count(self, state: JobState) -> int:
        return sum(1 for st in self.jobs.values() if st.state == state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "state": self.state.value,
            "jobs": {job_id: st.to_dict() for job_id, st in self.jobs.items()},
            "attempts": dict(self.attempts),
            "permanently_failed": list(self.permanently_failed),
        }


def aggregate_state(states: Iterable[JobState], *, finished: bool) -> JobState:
    """Campaign view of its node jobs. Ready only when every job is Ready."""
    states = list(states)
    if all(s == JobState.READY for s in states):
        return JobState.READY if finished else JobState.IN_PROGRESS
    if not finished:
        if all(s == JobState.QUEUED for s in states):
            return JobState.QUEUED
        return JobState.IN_PROGRESS
    if not any(s == JobState.READY for s in states):
        return JobState.FAILED
    return JobState.PARTIAL_FAILURE


# (job_id, attempt, status); status None marks the end of that job's runner.
_Update = Tuple[str, int, Optional[PullJobStatus]]


@dataclass
class _Campaign:
    campaign_id: str
    jobs: Tuple[PullJob, ...]
    statuses: Dict[str, PullJobStatus] = field(default_factory=dict)
    attempts: Dict[str, int] = field(default_factory=dict)
    updates: "asyncio.Queue[_Update]" = field(default_factory=asyncio.Queue)
    runners: List["asyncio.Task[None]"] = field(default_factory=list)
    aggregator: Optional["asyncio.Task[None]"] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


class ClusterPrefetchScheduler:
    """
    Runs pull campaigns across registered nodes.

    At most `cluster_concurrency` node jobs talk to the registry at once,
    whatever each node's own pool size. Node jobs that end Failed or
    PartialFailure are retried (failed subset only) until `max_attempts`
    runs, then reported as permanently failed.
    """

    def __init__(
        self,
        *,
        cluster_concurrency: int = 8,
        stagger_window_s: float = 0.0,
        max_attempts: int = 3,
        backoff_base_s: float = 0.5,
        backoff_cap_s: float = 30.0,
    ) -> None:
        if cluster_concurrency < 1:
            raise ValueError("cluster_concurrency must be >= 1")
        if stagger_window_s < 0:
            raise ValueError("stagger_window_s must be >= 0")
        self.cluster_concurrency = cluster_concurrency
        self.stagger_window_s = stagger_window_s
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self._slots = asyncio.Semaphore(cluster_concurrency)
        self._nodes: Dict[str, NodeCoordinator] = {}
        self._campaigns: Dict[str, _Campaign] = {}
        self._running = 0
        self.max_running = 0

    @classmethod
    def from_config(cls, cfg: PrefetchConfig) -> "ClusterPrefetchScheduler":
        return cls(
            cluster_concurrency=cfg.cluster_concurrency,
            stagger_window_s=cfg.stagger_window_s,
            max_attempts=cfg.campaign_max_attempts,
            backoff_base_s=cfg.backoff_base_s,
            backoff_cap_s=cfg.backoff_cap_s,
        )

    def register_node(self, node_id: str, coordinator: NodeCoordinator) -> None:
        if node_id in self._nodes and self._nodes[node_id] is not coordinator:
            raise ValueError(f"node {node_id} is already registered")
        self._nodes[node_id] = coordinator

    def nodes(self) -> List[str]:
        return sorted(self._nodes)

    # ---- campaigns ----

    def submit(self, pull_jobs: Iterable[PullJob]) -> CampaignHandle:
        campaign_id = uuid.uuid4().hex[:12]
        jobs: List[PullJob] = []
        for i, job in enumerate(pull_jobs):
            if job.node_id not in self._nodes:
                raise KeyError(f"unknown node {job.node_id}")
            jobs.append(replace(job, job_id=job.job_id or f"{campaign_id}-{i}", state=JobState.QUEUED))
        if len({j.job_id for j in jobs}) != len(jobs):
            raise ValueError("duplicate job ids in campaign")

        camp = _Campaign(campaign_id=campaign_id, jobs=tuple(jobs))
        for job in jobs:
            camp.statuses[job.job_id] = PullJobStatus(
                job_id=job.job_id, node_id=job.node_id, state=JobState.QUEUED, progress=LayerProgress()
            )
            camp.attempts[job.job_id] = 0
        self._campaigns[campaign_id] = camp

        n = len(jobs)
        camp.aggregator = asyncio.create_task(self._aggregate(camp))
        for i, job in enumerate(jobs):
            delay = self.stagger_window_s * i / n if n else 0.0
            camp.runners.append(asyncio.create_task(self._run_job(camp, job, delay)))
        logger.info(f"campaign {campaign_id}: {n} job(s) on {len({j.node_id for j in jobs})} node(s)")
        return CampaignHandle(campaign_id=campaign_id, jobs=camp.jobs)

    def status(self, campaign: Union[CampaignHandle, str]) -> CampaignStatus:
        camp = self._campaign(campaign)
        finished = camp.done.is_set()
        state = aggregate_state((st.state for st in camp.statuses.values()), finished=finished)
        failed: Tuple[str, ...] = ()
        if finished:
            failed = tuple(job_id for job_id, st in camp.statuses.items() if st.state != JobState.READY)
        return CampaignStatus(
            campaign_id=camp.campaign_id,
            state=state,
            jobs=dict(camp.statuses),
            attempts=dict(camp.attempts),
            permanently_failed=failed,
        )

    async def wait(self, campaign: Union[CampaignHandle, str], timeout: Optional[float] = None) -> CampaignStatus:
        camp = self._campaign(campaign)
        await asyncio.wait_for(camp.done.wait(), timeout=timeout)
        return self.status(camp.campaign_id)

    async def cancel(self, campaign: Union[CampaignHandle, str]) -> CampaignStatus:
        camp = self._campaign(campaign)
        if not camp.done.is_set():
            for job in camp.jobs:
                try:
                    self._nodes[job.node_id].cancel(job.job_id)
                except KeyError:
                    pass  # not started yet
            for r in camp.runners:
                r.cancel()
            await camp.done.wait()
        logger.info(f"campaign {camp.campaign_id} canceled")
        return self.status(camp.campaign_id)

    async def aclose(self) -> None:
        for camp in list(self._campaigns.values()):
            if not camp.done.is_set():
                await self.cancel(camp.campaign_id)
        for node in self._nodes.values():
            await node.aclose()

    def _campaign(self, campaign: Union[CampaignHandle, str]) -> _Campaign:
        campaign_id = campaign.campaign_id if isinstance(campaign, CampaignHandle) else campaign
        camp = self._campaigns.get(campaign_id)
        if camp is None:
            raise KeyError(f"unknown campaign {campaign_id}")
        return camp

    # ---- runners ----

    async def _run_job(self, camp: _Campaign, job: PullJob, delay: float) -> None:
        node = self._nodes[job.node_id]
        attempt = 0
        last: Optional[PullJobStatus] = None
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            delays = backoff_delays(self.backoff_base_s, self.backoff_cap_s)
            while True:
                attempt += 1
                async with self._slot():
                    if attempt == 1:
                        async for st in node.reconcile_stream(job.images, job_id=job.job_id, priority=job.priority):
                            last = st
                            camp.updates.put_nowait((job.job_id, attempt, st))
                    else:
                        last = await node.retry_failed(job.job_id)
                        camp.updates.put_nowait((job.job_id, attempt, last))
                if last is None or last.state == JobState.READY or attempt >= self.max_attempts:
                    break
                wait_s = backoff.full_jitter(next(delays))
                logger.warning(
                    f"campaign {camp.campaign_id}: job {job.job_id} on {job.node_id} ended {last.state.value} "
                    f"(attempt {attempt}/{self.max_attempts}); retrying failed layers in {wait_s:.2f}s"
                )
                await asyncio.sleep(wait_s)
        except asyncio.CancelledError:
            camp.updates.put_nowait((job.job_id, attempt, _stopped(job, last)))
            raise
        except Exception as e:
            logger.exception(f"campaign {camp.campaign_id}: job {job.job_id} on {job.node_id} crashed: {e}")
            camp.updates.put_nowait((job.job_id, attempt, _stopped(job, last)))
        finally:
            camp.updates.put_nowait((job.job_id, attempt, None))

    def _slot(self) -> "_Slot":
        return _Slot(self)

    async def _aggregate(self, camp: _Campaign) -> None:
        remaining = len(camp.jobs)
        while remaining:
            job_id, attempt, st = await camp.updates.get()
            if st is None:
                remaining -= 1
                continue
            camp.statuses[job_id] = st
            camp.attempts[job_id] = attempt
        camp.done.set()
        final = self.status(camp.campaign_id)
        logger.info(
            f"campaign {camp.campaign_id} {final.state.value}: "
            f"{final.count(JobState.READY)}/{len(camp.jobs)} ready, {len(final.permanently_failed)} failed"
        )


class _Slot:
    """One unit of the cluster-wide concurrency ceiling."""

    def __init__(self, scheduler: ClusterPrefetchScheduler) -> None:
        self._s = scheduler

    async def __aenter__(self) -> None:
        await self._s._slots.acquire()
        self._s._running += 1
        self._s.max_running = max(self._s.max_running, self._s._running)

    async def __aexit__(self, *exc: object) -> None:
        self._s._running -= 1
        self._s._slots.release()


def _stopped(job: PullJob, last: Optional[PullJobStatus]) -> PullJobStatus:
    """Terminal status for a job whose runner stopped before the node reported one."""
    if last is not None and last.state.terminal:
        return last
    progress = last.progress if last is not None else LayerProgress()
    state = JobState.PARTIAL_FAILURE if progress.ready else JobState.FAILED
    return PullJobStatus(
        job_id=job.job_id,
        node_id=job.node_id,
        state=state,
        progress=progress,
        failed_digests=last.failed_digests if last is not None else (),
        image_errors=last.image_errors if last is not None else {},
    )
