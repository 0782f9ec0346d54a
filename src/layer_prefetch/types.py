from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .errors import PrefetchError
from .image_refs import ImageReference


class EntryState(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    READY = "ready"
    FAILED = "failed"
    EVICTED = "evicted"


class TaskState(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.READY, TaskState.FAILED)


class JobState(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    PARTIAL_FAILURE = "partial_failure"
    READY = "ready"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.READY, JobState.FAILED, JobState.PARTIAL_FAILURE)


@dataclass(frozen=True)
class LayerDescriptor:
    digest: str
    size: int
    media_type: str = ""


@dataclass(frozen=True)
class Manifest:
    ref: ImageReference
    layers: Tuple[LayerDescriptor, ...]
    resolved_at: float
    ttl_s: float
    digest: Optional[str] = None  # manifest digest as reported by the registry

    def expired(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.resolved_at >= self.ttl_s

    @property
    def total_size(self) -> int:
        return sum(layer.size for layer in self.layers)


@dataclass
class CacheEntry:
    """Index record for one blob. Mutated only by CacheStore under its index lock."""

    digest: str
    size: int
    state: EntryState
    refcount: int = 0
    last_access: float = field(default_factory=time.time)
    aborts: int = 0
    writer_id: Optional[int] = None

    def evictable(self) -> bool:
        return self.state == EntryState.READY and self.refcount == 0


@dataclass
class DownloadTask:
    descriptor: LayerDescriptor
    source: ImageReference
    priority: int = 0
    seq: int = 0
    state: TaskState = TaskState.QUEUED
    attempts: int = 0
    next_retry_at: Optional[float] = None
    bytes_transferred: int = 0
    job_ids: Set[str] = field(default_factory=set)
    canceled: bool = False

    @property
    def digest(self) -> str:
        return self.descriptor.digest


@dataclass(frozen=True)
class FetchResult:
    digest: str
    state: TaskState
    cache_hit: bool = False
    bytes_transferred: int = 0
    attempts: int = 0
    duration_s: float = 0.0
    error: Optional[PrefetchError] = None

    @property
    def ok(self) -> bool:
        return self.state == TaskState.READY


@dataclass
class PullJob:
    node_id: str
    images: Tuple[ImageReference, ...]
    job_id: str = ""
    priority: int = 0
    state: JobState = JobState.QUEUED


@dataclass(frozen=True)
class LayerProgress:
    pending: int = 0
    in_flight: int = 0
    ready: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_flight + self.ready + self.failed


@dataclass(frozen=True)
class PullJobStatus:
    job_id: str
    node_id: str
    state: JobState
    progress: LayerProgress
    failed_digests: Tuple[str, ...] = ()
    image_errors: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "job_id": self.job_id,
            "node_id": self.node_id,
            "state": self.state.value,
            "layers": {
                "pending": self.progress.pending,
                "in_flight": self.progress.in_flight,
                "ready": self.progress.ready,
                "failed": self.progress.failed,
            },
        }
        if self.failed_digests:
            out["failed_digests"] = list(self.failed_digests)
        if self.image_errors:
            out["image_errors"] = dict(self.image_errors)
        return out


def dedupe_layers(manifests: List[Manifest]) -> List[Tuple[LayerDescriptor, ImageReference]]:
    """Union of layers across manifests, first occurrence wins, keyed by digest."""
    seen: Set[str] = set()
    out: List[Tuple[LayerDescriptor, ImageReference]] = []
    for m in manifests:
        for layer in m.layers:
            if layer.digest in seen:
                continue
            seen.add(layer.digest)
            out.append((layer, m.ref))
    return out
