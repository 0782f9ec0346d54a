from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional


@dataclass
class LayerFetchMetrics:
    digest: str
    outcome: str  # ready|failed|canceled
    duration_ms: int
    bytes_transferred: int
    attempts: int
    cache_hit: bool = False
    error_kind: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "digest": self.digest,
            "outcome": self.outcome,
            "duration_ms": int(self.duration_ms),
            "bytes_transferred": int(self.bytes_transferred),
            "attempts": int(self.attempts),
            "cache_hit": bool(self.cache_hit),
        }
        if self.error_kind is not None:
            out["error_kind"] = self.error_kind
        return out


class PrefetchMetrics:
    """
    Counters exposed to an external monitoring collaborator.

    Shared by the cache store, fetcher pool and node coordinator of a node.
    Only the most recent `max_records` layer fetch records are kept.
    """

    def __init__(self, max_records: int = 1024) -> None:
        self._lock = threading.Lock()
        self.cache_hits = 0
        self.cache_misses = 0
        self.evictions = 0
        self.evicted_bytes = 0
        self.bytes_transferred = 0
        self.retries = 0
        self._layers: Deque[LayerFetchMetrics] = deque(maxlen=max_records)
        self._jobs: Dict[str, str] = {}

    def record_hit(self) -> None:
        with self._lock:
            self.cache_hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self.cache_misses += 1

    def record_eviction(self, size: int) -> None:
        with self._lock:
            self.evictions += 1
            self.evicted_bytes += int(size)

    def record_bytes(self, n: int) -> None:
        with self._lock:
            self.bytes_transferred += int(n)

    def record_retry(self) -> None:
        with self._lock:
            self.retries += 1

    def record_layer(self, rec: LayerFetchMetrics) -> None:
        with self._lock:
            self._layers.append(rec)

    def record_job(self, job_id: str, state: str) -> None:
        with self._lock:
            self._jobs[job_id] = state

    def layer_records(self) -> List[LayerFetchMetrics]:
        with self._lock:
            return list(self._layers)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "evictions": self.evictions,
                "evicted_bytes": self.evicted_bytes,
                "bytes_transferred": self.bytes_transferred,
                "retries": self.retries,
                "layers": [r.to_json() for r in self._layers],
                "jobs": dict(self._jobs),
            }
