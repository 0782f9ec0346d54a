from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Optional

from .config import PrefetchConfig
from .image_refs import ImageReference
from .registry import RegistryBackend
from .types import Manifest, dedupe_layers

logger = logging.getLogger(__name__)


class ManifestResolver:
    """
    Resolves image references to layer lists, caching results with a TTL.

    Concurrent resolves of the same reference share one registry request.
    Failures are never cached.
    """

    def __init__(
        self,
        backend: RegistryBackend,
        *,
        ttl_s: float = 300.0,
        ttl_for: Optional[Callable[[str], float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._ttl_s = ttl_s
        self._ttl_for = ttl_for
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[ImageReference, Manifest] = {}
        self._inflight: Dict[ImageReference, "asyncio.Future[Manifest]"] = {}

    @classmethod
    def from_config(cls, backend: RegistryBackend, cfg: PrefetchConfig) -> "ManifestResolver":
        return cls(backend, ttl_s=cfg.manifest_ttl_s, ttl_for=cfg.manifest_ttl_for)

    def ttl_for(self, ref: ImageReference) -> float:
        if self._ttl_for is not None:
            return self._ttl_for(ref.registry)
        return self._ttl_s

    def cached(self, ref: ImageReference) -> Optional[Manifest]:
        with self._lock:
            m = self._cache.get(ref)
            if m is not None and m.expired(self._clock()):
                del self._cache[ref]
                return None
            return m

    async def resolve(self, ref: ImageReference) -> Manifest:
        while True:
            m = self.cached(ref)
            if m is not None:
                return m

            with self._lock:
                fut = self._inflight.get(ref)
                owner = fut is None
                if owner:
                    fut = asyncio.get_running_loop().create_future()
                    self._inflight[ref] = fut
            assert fut is not None
            if owner:
                return await self._fetch(ref, fut)
            try:
                return await asyncio.shield(fut)
            except asyncio.CancelledError:
                if fut.cancelled():
                    # The resolving caller was canceled; try again ourselves.
                    continue
                raise

    async def _fetch(self, ref: ImageReference, fut: "asyncio.Future[Manifest]") -> Manifest:
        try:
            resolved = await self._backend.resolve_manifest(ref)
            m = Manifest(
                ref=ref,
                layers=tuple(resolved.layers),
                resolved_at=self._clock(),
                ttl_s=self.ttl_for(ref),
                digest=resolved.digest,
            )
            m = replace(m, layers=tuple(layer for layer, _ in dedupe_layers([m])))
            with self._lock:
                self._cache[ref] = m
            logger.debug(f"resolved {ref}: {len(m.layers)} layers, {m.total_size} bytes")
            fut.set_result(m)
            return m
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            fut.exception()  # waiters re-raise it; keep asyncio from logging it as unretrieved
            raise
        finally:
            with self._lock:
                self._inflight.pop(ref, None)

    def invalidate(self, ref: ImageReference) -> bool:
        with self._lock:
            return self._cache.pop(ref, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

