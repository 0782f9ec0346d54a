from __future__ import annotations

import asyncio
import logging
import re
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

import aiohttp
import msgspec

from .digests import CHUNK_SIZE, compute_digest, normalize_digest
from .errors import AuthFailure, NotFound, PrefetchError, RegistryTimeout, RegistryUnavailable
from .image_refs import DEFAULT_REGISTRY, ImageReference
from .types import LayerDescriptor

logger = logging.getLogger(__name__)

DOCKER_HUB_API_HOST = "registry-1.docker.io"

MEDIA_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_OCI_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_DOCKER_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
MEDIA_OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"

MANIFEST_ACCEPT = ", ".join([MEDIA_OCI_MANIFEST, MEDIA_OCI_INDEX, MEDIA_DOCKER_MANIFEST, MEDIA_DOCKER_LIST])
INDEX_MEDIA_TYPES = frozenset({MEDIA_OCI_INDEX, MEDIA_DOCKER_LIST})

_RE_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_RE_CONTENT_RANGE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")


@dataclass(frozen=True)
class ResolvedManifest:
    layers: Tuple[LayerDescriptor, ...]
    digest: Optional[str] = None
    media_type: str = ""


class BlobStream:
    """
    An open blob response. `offset` is where the bytes actually start: a
    server that ignores Range answers from 0 and the caller must restart.
    """

    def __init__(self, offset: int, chunks: AsyncIterator[bytes], total: Optional[int] = None) -> None:
        self.offset = offset
        self.total = total
        self._chunks = chunks

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks


class RegistryBackend(Protocol):
    """The capabilities the fetch/cache layer needs from a registry."""

    async def resolve_manifest(self, ref: ImageReference) -> ResolvedManifest:
        ...

    def fetch_blob_range(self, ref: ImageReference, digest: str, offset: int = 0) -> AsyncContextManager[BlobStream]:
        ...


class _Platform(msgspec.Struct):
    architecture: str = ""
    os: str = ""
    variant: str = ""


class _Descriptor(msgspec.Struct, rename="camel"):
    media_type: str = ""
    digest: str = ""
    size: int = 0
    platform: Optional[_Platform] = None


class _ManifestDoc(msgspec.Struct, rename="camel"):
    schema_version: int = 2
    media_type: str = ""
    layers: List[_Descriptor] = []
    manifests: List[_Descriptor] = []


def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """Split a WWW-Authenticate header into (scheme, params)."""
    scheme, _, rest = (header or "").strip().partition(" ")
    return scheme.strip().lower(), dict(_RE_CHALLENGE_PARAM.findall(rest))


def _match_platform(p: Optional[_Platform], platform: str) -> bool:
    if p is None:
        return False
    parts = platform.split("/")
    os_, arch = parts[0], parts[1]
    variant = parts[2] if len(parts) > 2 else ""
    if p.os != os_ or p.architecture != arch:
        return False
    return not variant or p.variant == variant


def _raise_for_status(resp: aiohttp.ClientResponse, what: str, digest: Optional[str] = None) -> None:
    status = resp.status
    if status < 400:
        return
    if status == 404:
        raise NotFound(f"{what}: not found", digest=digest)
    if status in (401, 403):
        raise AuthFailure(f"{what}: credentials rejected ({status})", digest=digest)
    if status == 429 or status >= 500:
        raise RegistryUnavailable(f"{what}: registry returned {status}", digest=digest, status=status)
    raise PrefetchError(f"{what}: unexpected status {status}", digest=digest)


class RegistryClient:
    """
    OCI distribution (v2) client.

    Endpoints:
      - GET /v2/<repository>/manifests/<tag-or-digest>
      - GET /v2/<repository>/blobs/<digest>  (Range: bytes=<offset>-)

    Bearer token exchange follows the `WWW-Authenticate` challenge of a 401;
    tokens are cached per (host, scope). `credentials` maps a registry host
    to (username, password) used for the exchange or for basic auth.
    `host_overrides` points a registry name at another host (a pull-through
    mirror, or a local test server).
    """

    def __init__(
        self,
        *,
        scheme: str = "https",
        credentials: Optional[Mapping[str, Tuple[str, str]]] = None,
        host_overrides: Optional[Mapping[str, str]] = None,
        platform: str = "linux/amd64",
        timeout_s: float = 30.0,
    ) -> None:
        self.scheme = scheme
        self.credentials = dict(credentials or {})
        self.host_overrides = dict(host_overrides or {})
        self.platform = platform
        self.timeout_s = timeout_s
        self._tokens: Dict[Tuple[str, str], str] = {}

    def api_host(self, registry: str) -> str:
        host = self.host_overrides.get(registry)
        if host:
            return host
        if registry == DEFAULT_REGISTRY:
            return DOCKER_HUB_API_HOST
        return registry

    def _url(self, ref: ImageReference, kind: str, reference: str) -> str:
        return f"{self.scheme}://{self.api_host(ref.registry)}/v2/{ref.repository}/{kind}/{reference}"

    def _basic_auth(self, registry: str) -> Optional[aiohttp.BasicAuth]:
        cred = self.credentials.get(registry)
        if cred is None:
            return None
        return aiohttp.BasicAuth(cred[0], cred[1])

    async def _exchange_token(self, session: aiohttp.ClientSession, ref: ImageReference, challenge: str) -> Optional[str]:
        scheme, params = parse_challenge(challenge)
        if scheme == "basic":
            return None
        realm = params.get("realm")
        if scheme != "bearer" or not realm:
            raise AuthFailure(f"{ref}: unsupported auth challenge {challenge!r}")
        query = {"scope": params.get("scope") or f"repository:{ref.repository}:pull"}
        if params.get("service"):
            query["service"] = params["service"]
        async with session.get(realm, params=query, auth=self._basic_auth(ref.registry)) as resp:
            if resp.status in (401, 403):
                raise AuthFailure(f"{ref}: token exchange rejected ({resp.status})")
            _raise_for_status(resp, f"{ref}: token exchange")
            data = await resp.json(content_type=None)
        token = str((data or {}).get("token") or (data or {}).get("access_token") or "").strip()
        if not token:
            raise AuthFailure(f"{ref}: token exchange returned no token")
        return token

    async def _request(
        self,
        session: aiohttp.ClientSession,
        ref: ImageReference,
        url: str,
        headers: Mapping[str, str],
    ) -> aiohttp.ClientResponse:
        """GET with one auth round-trip on 401. The caller releases the response."""
        key = (self.api_host(ref.registry), f"repository:{ref.repository}:pull")
        exchanged = False
        while True:
            h = dict(headers)
            auth = None
            token = self._tokens.get(key)
            if token:
                h["Authorization"] = f"Bearer {token}"
            elif exchanged:
                auth = self._basic_auth(ref.registry)
            resp = await session.get(url, headers=h, auth=auth)
            if resp.status != 401 or exchanged:
                return resp
            challenge = resp.headers.get("WWW-Authenticate", "")
            resp.release()
            exchanged = True
            new_token = await self._exchange_token(session, ref, challenge)
            if new_token:
                self._tokens[key] = new_token
            else:
                self._tokens.pop(key, None)

    async def _get_manifest(
        self, session: aiohttp.ClientSession, ref: ImageReference, reference: str
    ) -> Tuple[_ManifestDoc, str, str]:
        url = self._url(ref, "manifests", reference)
        resp = await self._request(session, ref, url, {"Accept": MANIFEST_ACCEPT})
        try:
            _raise_for_status(resp, f"manifest {ref.repository}:{reference}")
            body = await resp.read()
            header_digest = resp.headers.get("Docker-Content-Digest", "").strip()
            media_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        finally:
            resp.release()
        try:
            doc = msgspec.json.decode(body, type=_ManifestDoc)
        except msgspec.DecodeError as e:
            raise PrefetchError(f"manifest {ref.repository}:{reference}: malformed: {e}") from e
        digest = normalize_digest(header_digest) if header_digest else compute_digest(body, "sha256")
        return doc, digest, doc.media_type or media_type

    async def resolve_manifest(self, ref: ImageReference) -> ResolvedManifest:
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                doc, digest, media_type = await self._get_manifest(session, ref, ref.reference())
                if media_type in INDEX_MEDIA_TYPES or (doc.manifests and not doc.layers):
                    chosen = next((m for m in doc.manifests if _match_platform(m.platform, self.platform)), None)
                    if chosen is None:
                        raise NotFound(f"{ref}: no manifest for platform {self.platform}")
                    logger.debug(f"{ref}: index narrowed to {chosen.digest} for {self.platform}")
                    doc, digest, media_type = await self._get_manifest(session, ref, chosen.digest)
        except aiohttp.ClientError as e:
            raise RegistryUnavailable(f"{ref}: {e}") from e
        except asyncio.TimeoutError as e:
            raise RegistryTimeout(f"{ref}: manifest request timed out") from e
        if not doc.layers:
            raise PrefetchError(f"{ref}: manifest has no layers (media type {media_type!r})")
        layers = tuple(
            LayerDescriptor(digest=normalize_digest(d.digest), size=int(d.size), media_type=d.media_type)
            for d in doc.layers
        )
        return ResolvedManifest(layers=layers, digest=digest, media_type=media_type)

    @asynccontextmanager
    async def fetch_blob_range(self, ref: ImageReference, digest: str, offset: int = 0) -> AsyncIterator[BlobStream]:
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.timeout_s, sock_read=self.timeout_s)
        headers: Dict[str, str] = {}
        if offset:
            headers["Range"] = f"bytes={offset}-"
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                resp = await self._request(session, ref, self._url(ref, "blobs", digest), headers)
                try:
                    if resp.status == 416:
                        raise RegistryUnavailable(f"blob {digest}: range {offset}- not satisfiable", digest=digest, status=416)
                    _raise_for_status(resp, f"blob {digest}", digest=digest)
                    start, total = 0, resp.content_length
                    if resp.status == 206:
                        m = _RE_CONTENT_RANGE.match(resp.headers.get("Content-Range", "").strip())
                        start = int(m.group(1)) if m else offset
                        if m and m.group(3) != "*":
                            total = int(m.group(3))
                    yield BlobStream(offset=start, chunks=_iter_body(resp, digest), total=total)
                finally:
                    resp.release()
        except aiohttp.ClientError as e:
            raise RegistryUnavailable(f"blob {digest}: {e}", digest=digest) from e
        except asyncio.TimeoutError as e:
            raise RegistryTimeout(f"blob {digest}: read timed out", digest=digest) from e


async def _iter_body(resp: aiohttp.ClientResponse, digest: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
            if chunk:
                yield chunk
    except aiohttp.ClientError as e:
        raise RegistryUnavailable(f"blob {digest}: stream interrupted: {e}", digest=digest) from e
    except asyncio.TimeoutError as e:
        raise RegistryTimeout(f"blob {digest}: read timed out", digest=digest) from e


_FALLBACK_ERRORS = (RegistryUnavailable, RegistryTimeout, NotFound)


class MirrorRegistryClient:
    """
    Tries `backends` in order (mirrors first, upstream last).

    Unavailable, timed-out and not-found answers fall through to the next
    backend. AuthFailure is surfaced immediately.
    """

    def __init__(self, backends: Sequence[RegistryBackend]) -> None:
        if not backends:
            raise ValueError("at least one backend is required")
        self.backends = list(backends)

    async def resolve_manifest(self, ref: ImageReference) -> ResolvedManifest:
        last: Optional[PrefetchError] = None
        for i, b in enumerate(self.backends):
            try:
                return await b.resolve_manifest(ref)
            except _FALLBACK_ERRORS as e:
                logger.warning(f"{ref}: backend {i} failed ({e}), trying next")
                last = e
        assert last is not None
        raise last

    @asynccontextmanager
    async def fetch_blob_range(self, ref: ImageReference, digest: str, offset: int = 0) -> AsyncIterator[BlobStream]:
        last: Optional[PrefetchError] = None
        for i, b in enumerate(self.backends):
            stack = AsyncExitStack()
            try:
                stream = await stack.enter_async_context(b.fetch_blob_range(ref, digest, offset))
            except _FALLBACK_ERRORS as e:
                await stack.aclose()
                logger.warning(f"blob {digest}: backend {i} failed ({e}), trying next")
                last = e
                continue
            async with stack:
                yield stream
            return
        assert last is not None
        raise last


def describe_backend(backend: Any) -> str:
    if isinstance(backend, MirrorRegistryClient):
        return "mirror(" + ", ".join(describe_backend(b) for b in backend.backends) + ")"
    return type(backend).__name__
